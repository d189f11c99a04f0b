"""Chat client wrapper with schema-validated structured output."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Generic, TypeVar, Union

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel, Field, create_model

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class StructuredOutputError(RuntimeError):
    """Raised when a structured completion the caller depends on did not parse."""


@dataclass
class StructuredCompletion(Generic[T]):
    """A chat completion plus its parsed value (`None` when parsing failed)."""

    message: BaseMessage
    value: T | None

    @property
    def ok(self) -> bool:
        return self.value is not None

    def require(self) -> T:
        if self.value is None:
            raise StructuredOutputError(
                f"Model output could not be parsed: {message_text(self.message)[:200]!r}"
            )
        return self.value

    def history_message(self) -> AIMessage:
        """Plain assistant message suitable for appending to a conversation.

        Native structured calls answer with a tool call; replaying that call
        without a tool response is rejected by most providers, so the parsed
        value is stored as JSON text instead.
        """
        if self.value is not None:
            return AIMessage(content=self.value.model_dump_json(by_alias=True))
        return AIMessage(content=message_text(self.message))


class StructuredChatClient:
    """Chat client exposing plain and schema-constrained completions.

    Models with tool calling use LangChain's `with_structured_output`. Other
    models (e.g. local ones) get the JSON schema appended as an instruction and
    their reply is parsed from text. Pass `native` to force either mode.
    """

    def __init__(self, llm: BaseChatModel, *, native: bool | None = None) -> None:
        self.llm = llm
        self.native = supports_tool_calling(llm) if native is None else native

    async def complete(self, messages: Sequence[BaseMessage]) -> BaseMessage:
        return await self.llm.ainvoke(list(messages))

    async def predict(
        self, messages: Sequence[BaseMessage], schema: type[T]
    ) -> StructuredCompletion[T]:
        if self.native:
            return await self._predict_native(messages, schema)
        return await self._predict_json(messages, schema)

    async def predict_one_of(
        self, messages: Sequence[BaseMessage], schemas: Sequence[type[BaseModel]]
    ) -> StructuredCompletion[BaseModel]:
        """Let the model answer with whichever of `schemas` fits.

        The value is an instance of one of `schemas`, or `None` when the reply
        matches none of them.
        """
        wrapper = _one_of_model(tuple(schemas))
        completion = await self.predict(messages, wrapper)
        value = getattr(completion.value, "value", None)
        return StructuredCompletion(message=completion.message, value=value)

    async def _predict_native(
        self, messages: Sequence[BaseMessage], schema: type[T]
    ) -> StructuredCompletion[T]:
        runnable = self.llm.with_structured_output(schema, include_raw=True)
        output: dict[str, Any] = await runnable.ainvoke(list(messages))
        parsed = output.get("parsed")
        if output.get("parsing_error") is not None or not isinstance(parsed, schema):
            logger.warning(
                "Structured %s output did not parse: %s",
                schema.__name__,
                output.get("parsing_error"),
            )
            parsed = None
        return StructuredCompletion(message=output["raw"], value=parsed)

    async def _predict_json(
        self, messages: Sequence[BaseMessage], schema: type[T]
    ) -> StructuredCompletion[T]:
        prompt = [*messages, HumanMessage(content=schema_instructions(schema))]
        response = await self.llm.ainvoke(prompt)
        value: T | None
        try:
            value = schema.model_validate(parse_json_markdown(message_text(response)))
        except ValueError as exc:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors.
            logger.warning("Structured %s output did not parse: %s", schema.__name__, exc)
            value = None
        return StructuredCompletion(message=response, value=value)


@lru_cache(maxsize=None)
def _one_of_model(schemas: tuple[type[BaseModel], ...]) -> type[BaseModel]:
    if not schemas:
        raise ValueError("At least one schema is required")
    names = [schema.__name__ for schema in schemas]
    return create_model(
        "Or".join(names),
        value=(
            Union[schemas],
            Field(description="Exactly one of: " + ", ".join(names)),
        ),
    )


def schema_instructions(schema: type[BaseModel]) -> str:
    return (
        "Respond ONLY with a JSON object that conforms to this JSON schema, "
        "without any surrounding prose:\n"
        f"{json.dumps(schema.model_json_schema(by_alias=True), indent=2)}"
    )


def supports_tool_calling(llm: Any) -> bool:
    bind_tools = getattr(type(llm), "bind_tools", None)
    return bind_tools is not None and bind_tools is not BaseChatModel.bind_tools


def message_text(message: Any) -> str:
    if isinstance(message, dict):
        return str(message.get("content", ""))
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return " ".join(parts).strip()
    return str(content)
