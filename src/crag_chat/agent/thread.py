"""Chatbot thread: retrieval, relevance filtering and corrective retrieval."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field

from crag_chat.agent.planning import (
    FinishWithResult,
    PlanEvaluator,
    PlanExecutor,
    PlanGenerator,
    StepExecutionResult,
)
from crag_chat.agent.relevance import ContextRelevanceEvaluator
from crag_chat.config import AgentConfig, RetrievalConfig
from crag_chat.llm.structured import StructuredChatClient
from crag_chat.obs.tracing import Timer, TraceStore
from crag_chat.retrieval.embedder import Embedder
from crag_chat.retrieval.vector_store import VectorStore
from crag_chat.types import ChatbotAnswer, Citation, ManualChunk, Product, ToolTrace

logger = logging.getLogger(__name__)

TOP_K = 3
RELEVANCE_THRESHOLD = 0.7
MIN_RELEVANT_CHUNKS = 2
FALLBACK_ANSWER = "Sorry, there was a problem."


class ManualAnswer(BaseModel):
    """Structured answer requested from the chat model."""

    model_config = ConfigDict(populate_by_name=True)

    manual_extract_id: int | None = Field(
        default=None,
        alias="ManualExtractId",
        description="Id of the manual extract the answer is based on, or null.",
    )
    manual_quote: str | None = Field(
        default=None,
        alias="ManualQuote",
        description="The relevant verbatim quote from the manual extract, up to 10 words.",
    )
    answer_text: str = Field(alias="AnswerText")


class ChatbotThread:
    """One conversation about one product.

    The conversation is owned by the thread and only ever appended to. Turns
    are serialised; a turn that fails or is cancelled leaves the conversation
    as it was.
    """

    def __init__(
        self,
        *,
        chat_client: StructuredChatClient,
        embedder: Embedder,
        vector_store: VectorStore,
        product: Product,
        plan_executor: PlanExecutor,
        plan_generator: PlanGenerator | None = None,
        plan_evaluator: PlanEvaluator | None = None,
        relevance_evaluator: ContextRelevanceEvaluator | None = None,
        config: AgentConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        trace_store: TraceStore | None = None,
        thread_id: str | None = None,
    ) -> None:
        self.chat_client = chat_client
        self.embedder = embedder
        self.vector_store = vector_store
        self.product = product
        self.plan_executor = plan_executor
        self.plan_generator = plan_generator or PlanGenerator(
            chat_client, tool_names=plan_executor.tool_names
        )
        self.plan_evaluator = plan_evaluator or PlanEvaluator(chat_client)
        self.relevance_evaluator = relevance_evaluator or ContextRelevanceEvaluator(chat_client)
        self.config = config or AgentConfig()
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.trace_store = trace_store
        self.thread_id = thread_id or str(uuid.uuid4())
        self.last_trace_id: str | None = None

        self._messages: list[BaseMessage] = [SystemMessage(content=_system_prompt(product))]
        self._lock = asyncio.Lock()

    @property
    def messages(self) -> list[BaseMessage]:
        return list(self._messages)

    async def answer(self, user_message: str) -> ChatbotAnswer:
        """Answer one user message.

        Returns the answer text, a citation when the model referenced one of
        this turn's manual extracts, and the context judged relevant (plus the
        corrective loop's outcome when it ran).
        """

        async with self._lock:
            past_steps: list[StepExecutionResult] = []
            with Timer() as timer:
                result = await self._answer(user_message, past_steps)

            if self.trace_store is not None:
                tool_traces: list[ToolTrace] = [
                    trace for step in past_steps for trace in step.tool_traces
                ]
                record = self.trace_store.create_record(
                    thread_id=self.thread_id,
                    question=user_message,
                    answer=result.text,
                    citation=result.citation,
                    context=result.context,
                    tool_traces=tool_traces,
                    corrective_steps=len(past_steps),
                    latency_ms=timer.elapsed_ms,
                )
                self.last_trace_id = record.trace_id
            return result

    async def _answer(
        self, user_message: str, past_steps: list[StepExecutionResult]
    ) -> ChatbotAnswer:
        vector = await self.embedder.embed_query(user_message)
        hits = await self.vector_store.search(
            self.retrieval_config.collection_name,
            vector,
            product_id=self.product.product_id,
            limit=TOP_K,
        )
        chunks_by_id = {hit.chunk.chunk_id: hit.chunk for hit in hits}
        for hit in hits:
            logger.debug(
                "Retrieved extract %s (score %.2f, page %s)",
                hit.chunk.chunk_id,
                hit.score,
                hit.chunk.page_number,
            )

        all_context: list[str] = []
        for chunk in chunks_by_id.values():
            score = await self.relevance_evaluator.evaluate(user_message, chunk.text)
            logger.info("Extract %s relevance %.2f", chunk.chunk_id, score)
            if score > RELEVANCE_THRESHOLD:
                all_context.append(chunk.text)

        if len(all_context) < MIN_RELEVANT_CHUNKS:
            logger.info(
                "%d relevant extracts; running corrective retrieval", len(all_context)
            )
            outcome = await self._corrective_retrieval(
                user_message, chunks_by_id.values(), past_steps
            )
            if outcome is not None:
                all_context.append(outcome)

        prompt = HumanMessage(content=_answer_prompt(user_message, chunks_by_id.values()))
        completion = await self.chat_client.predict([*self._messages, prompt], ManualAnswer)
        self._messages.extend([prompt, completion.history_message()])

        if completion.value is None:
            return ChatbotAnswer(FALLBACK_ANSWER, None, all_context)

        answer = completion.value
        chunk = (
            chunks_by_id.get(answer.manual_extract_id)
            if answer.manual_extract_id is not None
            else None
        )
        citation = (
            Citation(
                product_id=chunk.product_id,
                page_number=chunk.page_number,
                quote=answer.manual_quote or "",
            )
            if chunk is not None
            else None
        )
        return ChatbotAnswer(answer.answer_text, citation, all_context)

    async def _corrective_retrieval(
        self,
        user_message: str,
        chunks: Iterable[ManualChunk],
        past_steps: list[StepExecutionResult],
    ) -> str | None:
        """Plan/execute/evaluate until a result or the step budget runs out."""

        task = _corrective_task(user_message, chunks)
        plan = await self.plan_generator.generate_plan(task)

        for iteration in range(1, self.config.max_iterations + 1):
            past_steps.append(await self.plan_executor.execute_step(plan, task=task))
            decision = await self.plan_evaluator.evaluate(task, plan, past_steps)
            if isinstance(decision, FinishWithResult):
                logger.info("Corrective retrieval finished after %d steps", iteration)
                return decision.result.outcome
            plan = decision.plan

        logger.warning(
            "Corrective retrieval gave up after %d steps without a result",
            self.config.max_iterations,
        )
        return None


def _system_prompt(product: Product) -> str:
    return (
        "You are a helpful assistant, here to help customer service staff answer "
        "questions they have received from customers.\n"
        "The support staff member is currently answering a question about this product:\n"
        f"ProductId: {product.product_id}\n"
        f"Brand: {product.brand}\n"
        f"Model: {product.model}"
    )


def _render_extracts(chunks: Iterable[ManualChunk]) -> str:
    return "\n".join(
        f"<manual_extract id='{chunk.chunk_id}'>{chunk.text}</manual_extract>"
        for chunk in chunks
    )


def _corrective_task(user_message: str, chunks: Iterable[ManualChunk]) -> str:
    return (
        "Given the <user_question>, search the product manuals for relevant information.\n"
        "Look for information that may answer the question, and provide a response "
        "based on that information.\n"
        "The <context> was not enough to answer the question. Find the information "
        "that can complement the context to address the user question.\n\n"
        f"<user_question>\n{user_message}\n</user_question>\n\n"
        f"<context>\n{_render_extracts(chunks)}\n</context>"
    )


def _answer_prompt(user_message: str, chunks: Iterable[ManualChunk]) -> str:
    return (
        "Give an answer using ONLY information from the following product manual extracts.\n"
        "If the product manual doesn't contain the information, you should say so. "
        "Do not make up information beyond what is given.\n"
        "Whenever relevant, specify ManualExtractId to cite the manual extract that "
        "your answer is based on.\n\n"
        f"{_render_extracts(chunks)}\n\n"
        f"User question: {user_message}\n"
        "Respond as a JSON object in this format: {\n"
        '    "ManualExtractId": numberOrNull,\n'
        '    "ManualQuote": stringOrNull, // The relevant verbatim quote from the manual '
        "extract, up to 10 words\n"
        '    "AnswerText": string\n'
        "}"
    )
