"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple


@dataclass(slots=True, frozen=True)
class Product:
    """The product a chatbot thread answers questions about."""

    product_id: int
    brand: str
    model: str


@dataclass(slots=True, frozen=True)
class ManualChunk:
    """A stored extract of a product manual."""

    chunk_id: int
    product_id: int
    page_number: int
    text: str


@dataclass(slots=True)
class ScoredChunk:
    """A vector search hit."""

    chunk: ManualChunk
    score: float
    rank: int = 0


@dataclass(slots=True, frozen=True)
class Citation:
    """Points an answer back to the manual page and quote it came from."""

    product_id: int
    page_number: int
    quote: str


class ChatbotAnswer(NamedTuple):
    """Result of one chatbot turn."""

    text: str
    citation: Citation | None
    context: list[str]


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
