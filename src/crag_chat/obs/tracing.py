"""Per-turn tracing and groundedness evaluation."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from crag_chat.types import Citation, ToolTrace

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    thread_id: str
    timestamp_utc: str
    question: str
    answer: str
    citation: Citation | None
    context: list[str]
    tool_traces: list[ToolTrace]
    corrective_steps: int
    latency_ms: float
    groundedness: float


class GroundednessEvaluator:
    """Computes the share of answer sentences supported by returned context.

    A sentence counts as grounded when at least one context text covers a
    `min_overlap` fraction of its tokens. A deterministic proxy suitable for
    CI and contract tests, not a replacement for human review.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, context: list[str]) -> float:
        sentences = [
            sentence.strip()
            for sentence in re.split(r"(?<=[.!?])\s+", answer)
            if sentence.strip()
        ]
        if not sentences:
            return 1.0
        if not context:
            return 0.0

        context_token_sets = [set(self._normalize(text)) for text in context]
        grounded = 0
        for sentence in sentences:
            sentence_tokens = set(self._normalize(sentence))
            if not sentence_tokens:
                grounded += 1
                continue
            if any(
                self._overlap(sentence_tokens, tokens) >= self.min_overlap
                for tokens in context_token_sets
            ):
                grounded += 1

        return grounded / len(sentences)

    @staticmethod
    def _normalize(text: str) -> list[str]:
        return [token.lower() for token in _TOKEN_PATTERN.findall(text)]

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, groundedness_evaluator: GroundednessEvaluator | None = None) -> None:
        self._records: dict[str, TraceRecord] = {}
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()

    def create_record(
        self,
        *,
        thread_id: str,
        question: str,
        answer: str,
        citation: Citation | None,
        context: list[str],
        tool_traces: list[ToolTrace],
        corrective_steps: int,
        latency_ms: float,
    ) -> TraceRecord:
        record = TraceRecord(
            trace_id=str(uuid.uuid4()),
            thread_id=thread_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            answer=answer,
            citation=citation,
            context=list(context),
            tool_traces=tool_traces,
            corrective_steps=corrective_steps,
            latency_ms=latency_ms,
            groundedness=self._groundedness.score(answer, context),
        )
        self._records[record.trace_id] = record
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_turns": 0,
                "corrective_turns": 0,
                "cited_turns": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_groundedness": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_turns": total,
            "corrective_turns": sum(1 for record in records if record.corrective_steps),
            "cited_turns": sum(1 for record in records if record.citation is not None),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_groundedness": sum(record.groundedness for record in records) / total,
        }


class Timer:
    """Simple context timer used by the chatbot thread."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
