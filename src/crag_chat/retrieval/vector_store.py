"""Vector store interfaces and concrete adapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import sqrt
from typing import Any, Protocol

from crag_chat.types import ManualChunk, ScoredChunk

logger = logging.getLogger(__name__)


class VectorStore(Protocol):
    """Minimal vector store contract for manual retrieval."""

    async def upsert(
        self,
        collection_name: str,
        chunks: list[ManualChunk],
        embeddings: list[list[float]],
    ) -> None:
        """Insert or update chunk vectors."""

    async def search(
        self,
        collection_name: str,
        vector: list[float],
        *,
        product_id: int | None = None,
        limit: int,
    ) -> list[ScoredChunk]:
        """Return the `limit` nearest chunks, best first.

        `product_id=None` searches across all products.
        """

    async def max_chunk_id(self, collection_name: str) -> int:
        """Largest stored chunk id, or 0 for an empty or missing collection."""


@dataclass(slots=True)
class _StoredVector:
    chunk: ManualChunk
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[int, _StoredVector]] = {}

    async def upsert(
        self,
        collection_name: str,
        chunks: list[ManualChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        store = self._collections.setdefault(collection_name, {})
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            store[chunk.chunk_id] = _StoredVector(chunk=chunk, embedding=embedding)

    async def search(
        self,
        collection_name: str,
        vector: list[float],
        *,
        product_id: int | None = None,
        limit: int,
    ) -> list[ScoredChunk]:
        store = self._collections.get(collection_name, {})
        candidates = [
            rec
            for rec in store.values()
            if product_id is None or rec.chunk.product_id == product_id
        ]
        ranked = sorted(
            candidates,
            key=lambda rec: _cosine_similarity(vector, rec.embedding),
            reverse=True,
        )
        return [
            ScoredChunk(
                chunk=rec.chunk,
                score=_cosine_similarity(vector, rec.embedding),
                rank=i + 1,
            )
            for i, rec in enumerate(ranked[:limit])
        ]

    async def max_chunk_id(self, collection_name: str) -> int:
        return max(self._collections.get(collection_name, {}), default=0)

    def count(self, collection_name: str) -> int:
        return len(self._collections.get(collection_name, {}))


class QdrantVectorStore:
    """Qdrant adapter with the same contract as `InMemoryVectorStore`.

    Points carry the payload keys `productId`, `pageNumber` and `text`; the
    point id is the chunk id.
    """

    def __init__(self, url: str, *, client: Any | None = None) -> None:
        try:
            from qdrant_client import AsyncQdrantClient, models
        except ImportError as exc:  # pragma: no cover - optional extra
            raise RuntimeError(
                "Qdrant dependencies are not available. Install the `qdrant` extra."
            ) from exc

        self._models = models
        self._client = client or AsyncQdrantClient(url=url)

    async def upsert(
        self,
        collection_name: str,
        chunks: list[ManualChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        if not chunks:
            return
        if not await self._client.collection_exists(collection_name):
            logger.info("Creating Qdrant collection %r", collection_name)
            await self._client.create_collection(
                collection_name=collection_name,
                vectors_config=self._models.VectorParams(
                    size=len(embeddings[0]),
                    distance=self._models.Distance.COSINE,
                ),
            )
        points = [
            self._models.PointStruct(
                id=chunk.chunk_id,
                vector=embedding,
                payload={
                    "productId": chunk.product_id,
                    "pageNumber": chunk.page_number,
                    "text": chunk.text,
                },
            )
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]
        await self._client.upsert(collection_name=collection_name, points=points)

    async def search(
        self,
        collection_name: str,
        vector: list[float],
        *,
        product_id: int | None = None,
        limit: int,
    ) -> list[ScoredChunk]:
        query_filter = None
        if product_id is not None:
            query_filter = self._models.Filter(
                must=[
                    self._models.FieldCondition(
                        key="productId",
                        match=self._models.MatchValue(value=product_id),
                    )
                ]
            )
        response = await self._client.query_points(
            collection_name=collection_name,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            with_payload=True,
        )
        results: list[ScoredChunk] = []
        for rank, point in enumerate(response.points, start=1):
            payload = point.payload or {}
            chunk = ManualChunk(
                chunk_id=int(point.id),
                product_id=int(payload.get("productId", 0)),
                page_number=int(payload.get("pageNumber", 0)),
                text=str(payload.get("text", "")),
            )
            results.append(ScoredChunk(chunk=chunk, score=float(point.score), rank=rank))
        return results

    async def max_chunk_id(self, collection_name: str) -> int:
        if not await self._client.collection_exists(collection_name):
            return 0
        highest = 0
        offset = None
        while True:
            points, offset = await self._client.scroll(
                collection_name=collection_name,
                limit=1000,
                offset=offset,
                with_payload=False,
                with_vectors=False,
            )
            for point in points:
                highest = max(highest, int(point.id))
            if offset is None:
                return highest


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
