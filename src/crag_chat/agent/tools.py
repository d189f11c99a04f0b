"""Built-in tools available to the plan executor."""

from __future__ import annotations

import json
import logging

import httpx
from pydantic import BaseModel, Field

from crag_chat.agent.registry import ToolRegistry, ToolSpec
from crag_chat.config import RetrievalConfig
from crag_chat.retrieval.embedder import Embedder
from crag_chat.retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)

DUCKDUCKGO_ENDPOINT = "https://api.duckduckgo.com"


class WebSearchResult(BaseModel):
    abstract: str
    url: str


class DuckDuckGoSearchTool:
    """Web search through the DuckDuckGo Instant Answer API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint: str = DUCKDUCKGO_ENDPOINT,
    ) -> None:
        self._client = client
        self._endpoint = endpoint

    async def search_web(self, query: str) -> WebSearchResult:
        response = await self._client.get(
            self._endpoint, params={"q": query, "format": "json"}
        )
        response.raise_for_status()
        payload = response.json()
        result = WebSearchResult(
            abstract=payload.get("Abstract") or "",
            url=payload.get("AbstractURL") or "",
        )
        logger.info("Web search %r -> %s", query, result.url or "no abstract")
        return result


class WebSearchToolInput(BaseModel):
    query: str = Field(min_length=1, description="The web search query.")


class ManualSearchToolInput(BaseModel):
    search_phrase: str = Field(
        min_length=1, description="The search phrase or keywords."
    )
    product_id: int | None = Field(
        default=None,
        description="The product ID, or null to search across all products.",
    )


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    embedder: Embedder,
    vector_store: VectorStore,
    web_search: DuckDuckGoSearchTool | None = None,
    config: RetrievalConfig | None = None,
) -> None:
    """Register the tools used by the plan executor.

    Tools:
    - `manual_search`: semantic search over product manual extracts.
    - `web_search`: DuckDuckGo abstract lookup (only when a client is given).
    """

    retrieval_config = config or RetrievalConfig()

    async def _manual_search(input_data: ManualSearchToolInput) -> str:
        vector = await embedder.embed_query(input_data.search_phrase)
        hits = await vector_store.search(
            retrieval_config.collection_name,
            vector,
            product_id=input_data.product_id,
            limit=retrieval_config.search_tool_k,
        )
        if not hits:
            return "NO_RESULTS"
        return json.dumps(
            [
                {
                    "manualExtractId": hit.chunk.chunk_id,
                    "productId": hit.chunk.product_id,
                    "pageNumber": hit.chunk.page_number,
                    "text": hit.chunk.text,
                }
                for hit in hits
            ],
            ensure_ascii=False,
        )

    registry.register(
        ToolSpec(
            name="manual_search",
            description="Searches product manuals.",
            args_schema=ManualSearchToolInput,
            handler=_manual_search,
            tags=["retrieval", "rag"],
        )
    )

    if web_search is None:
        return

    async def _web_search(input_data: WebSearchToolInput) -> str:
        result = await web_search.search_web(input_data.query)
        return result.model_dump_json()

    registry.register(
        ToolSpec(
            name="web_search",
            description="Searches the web and returns an abstract with its source URL.",
            args_schema=WebSearchToolInput,
            handler=_web_search,
            tags=["web"],
        )
    )
