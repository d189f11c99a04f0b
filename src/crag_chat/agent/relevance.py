"""LLM-judged relevance of retrieved context to a question."""

from __future__ import annotations

import logging

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from crag_chat.llm.structured import StructuredChatClient

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You judge retrieval quality for a question-answering system.

Given a <question> and a candidate <context>, rate how relevant the context is
to answering the question:
- 1.0: the context directly answers the question.
- 0.5: the context is on topic but only partially helpful.
- 0.0: the context is unrelated.
""".strip()


class ContextRelevance(BaseModel):
    """Relevance verdict for one candidate context."""

    reasoning: str = Field(description="One or two sentences explaining the score.")
    score: float = Field(ge=0.0, le=1.0, description="Relevance between 0 and 1.")


class ContextRelevanceEvaluator:
    """Scores candidate texts one model call at a time."""

    def __init__(self, chat_client: StructuredChatClient) -> None:
        self.chat_client = chat_client

    async def evaluate(self, question: str, candidate_text: str) -> float:
        messages = [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(
                content=(
                    f"<question>\n{question}\n</question>\n\n"
                    f"<context>\n{candidate_text}\n</context>"
                )
            ),
        ]
        completion = await self.chat_client.predict(messages, ContextRelevance)
        if completion.value is None:
            logger.warning("Relevance verdict unparseable; treating context as irrelevant")
            return 0.0
        return completion.value.score
