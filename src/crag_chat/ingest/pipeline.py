"""Manual ingest pipeline: pages -> chunks -> embed -> upsert."""

from __future__ import annotations

import asyncio
import logging

from crag_chat.config import RetrievalConfig
from crag_chat.retrieval.embedder import Embedder
from crag_chat.retrieval.vector_store import VectorStore
from crag_chat.types import ManualChunk

logger = logging.getLogger(__name__)


class ManualIngestPipeline:
    """Coordinates chunking, embedding and vector store upserts for manuals.

    Chunk ids are sequential integers. Without an explicit `start_id` the
    counter continues after the largest id already in the collection, so a
    restarted pipeline does not overwrite earlier manuals.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        config: RetrievalConfig | None = None,
        *,
        start_id: int | None = None,
    ) -> None:
        self._embedder = embedder
        self._vector_store = vector_store
        self.config = config or RetrievalConfig()
        self._next_id = start_id
        self._id_lock = asyncio.Lock()

    async def ingest_pages(self, product_id: int, pages: list[str]) -> list[ManualChunk]:
        """Ingest the pages of one product manual; page numbers start at 1."""

        pieces = [
            (page_number, text)
            for page_number, page_text in enumerate(pages, start=1)
            for text in split_page(page_text, self.config.max_chunk_chars)
        ]
        first_id = await self._reserve_ids(len(pieces))
        chunks = [
            ManualChunk(
                chunk_id=first_id + offset,
                product_id=product_id,
                page_number=page_number,
                text=text,
            )
            for offset, (page_number, text) in enumerate(pieces)
        ]
        if not chunks:
            logger.warning("No text to ingest for product %s", product_id)
            return []

        embeddings = await self._embedder.embed_documents([chunk.text for chunk in chunks])
        await self._vector_store.upsert(self.config.collection_name, chunks, embeddings)
        logger.info(
            "Ingested %d chunks from %d pages for product %s",
            len(chunks),
            len(pages),
            product_id,
        )
        return chunks

    async def _reserve_ids(self, amount: int) -> int:
        async with self._id_lock:
            if self._next_id is None:
                collection = self.config.collection_name
                self._next_id = await self._vector_store.max_chunk_id(collection) + 1
            first_id = self._next_id
            self._next_id += amount
            return first_id


def split_page(text: str, max_chars: int) -> list[str]:
    """Pack the paragraphs of a page into chunks of at most `max_chars`.

    A single paragraph longer than the budget becomes its own chunk.
    """

    paragraphs = [part.strip() for part in text.split("\n\n") if part.strip()]
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for paragraph in paragraphs:
        if current and size + len(paragraph) + 2 > max_chars:
            chunks.append("\n\n".join(current))
            current, size = [], 0
        current.append(paragraph)
        size += len(paragraph) + 2
    if current:
        chunks.append("\n\n".join(current))
    return chunks
