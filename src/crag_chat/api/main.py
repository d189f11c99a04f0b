"""FastAPI entrypoint for ingest, chat threads, source search and traces."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from crag_chat.agent.planning import PlanExecutor
from crag_chat.agent.registry import ToolRegistry
from crag_chat.agent.thread import ChatbotThread
from crag_chat.agent.tools import DuckDuckGoSearchTool, register_builtin_tools
from crag_chat.config import AgentConfig, RetrievalConfig, Settings
from crag_chat.ingest.pipeline import ManualIngestPipeline
from crag_chat.llm.structured import StructuredChatClient, message_text
from crag_chat.obs.tracing import TraceStore
from crag_chat.retrieval.embedder import Embedder, HashingEmbedder, LangChainEmbedder
from crag_chat.retrieval.vector_store import InMemoryVectorStore, QdrantVectorStore, VectorStore
from crag_chat.types import Product

settings = Settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    if not settings.openai_api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=settings.openai_model, api_key=settings.openai_api_key, temperature=0
    )


def _create_embedder() -> Embedder:
    if not settings.openai_api_key:
        return HashingEmbedder()

    from langchain_openai import OpenAIEmbeddings

    return LangChainEmbedder(
        OpenAIEmbeddings(
            model=settings.openai_embedding_model, api_key=settings.openai_api_key
        )
    )


def _create_vector_store() -> VectorStore:
    if settings.qdrant_url:
        return QdrantVectorStore(settings.qdrant_url)
    return InMemoryVectorStore()


class IngestRequest(BaseModel):
    product_id: int
    pages: list[str] = Field(min_length=1)


class CreateThreadRequest(BaseModel):
    product_id: int
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=20)
    product_id: int | None = None


_http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await _http_client.aclose()


app = FastAPI(title="Corrective RAG Assistant", version="0.1.0", lifespan=_lifespan)

_retrieval_config = RetrievalConfig()
_agent_config = AgentConfig()
_embedder = _create_embedder()
_vector_store = _create_vector_store()
_ingest_pipeline = ManualIngestPipeline(_embedder, _vector_store, _retrieval_config)

_registry = ToolRegistry()
register_builtin_tools(
    _registry,
    embedder=_embedder,
    vector_store=_vector_store,
    web_search=DuckDuckGoSearchTool(_http_client, endpoint=settings.web_search_endpoint),
    config=_retrieval_config,
)

_trace_store = TraceStore()
_llm = _create_llm()
# Custom step runner for PlanExecutor; None selects the LangChain agent runtime.
_step_runner: Any | None = None
_threads: dict[str, ChatbotThread] = {}


def _get_thread(thread_id: str) -> ChatbotThread:
    thread = _threads.get(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return thread


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "vector_store": type(_vector_store).__name__,
        "tools": [spec.name for spec in _registry.specs()],
        "thread_count": len(_threads),
    }


@app.post("/ingest")
async def ingest(request: IngestRequest) -> dict[str, Any]:
    chunks = await _ingest_pipeline.ingest_pages(request.product_id, request.pages)
    return {
        "chunks_created": len(chunks),
        "chunk_ids": [chunk.chunk_id for chunk in chunks],
    }


@app.post("/threads")
def create_thread(request: CreateThreadRequest) -> dict[str, Any]:
    if _llm is None:
        raise HTTPException(status_code=503, detail="Chat model is not configured.")

    chat_client = StructuredChatClient(_llm)
    thread = ChatbotThread(
        chat_client=chat_client,
        embedder=_embedder,
        vector_store=_vector_store,
        product=Product(
            product_id=request.product_id, brand=request.brand, model=request.model
        ),
        plan_executor=PlanExecutor(
            llm=_llm,
            tool_registry=_registry,
            config=_agent_config,
            executor=_step_runner,
        ),
        config=_agent_config,
        retrieval_config=_retrieval_config,
        trace_store=_trace_store,
    )
    _threads[thread.thread_id] = thread
    logger.info("Created thread %s for product %s", thread.thread_id, request.product_id)
    return {"thread_id": thread.thread_id}


@app.post("/threads/{thread_id}/messages")
async def post_message(thread_id: str, request: MessageRequest) -> dict[str, Any]:
    thread = _get_thread(thread_id)
    try:
        answer = await thread.answer(request.message)
    except Exception as exc:
        logger.exception("Turn failed on thread %s", thread_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return {
        "answer": answer.text,
        "citation": asdict(answer.citation) if answer.citation else None,
        "context": answer.context,
        "trace_id": thread.last_trace_id,
    }


@app.get("/threads/{thread_id}/messages")
def list_messages(thread_id: str) -> dict[str, Any]:
    thread = _get_thread(thread_id)
    return {
        "items": [
            {"role": message.type, "content": message_text(message)}
            for message in thread.messages
        ]
    }


@app.post("/sources/search")
async def source_search(request: SourceSearchRequest) -> dict[str, Any]:
    vector = await _embedder.embed_query(request.query)
    hits = await _vector_store.search(
        _retrieval_config.collection_name,
        vector,
        product_id=request.product_id,
        limit=request.top_k,
    )
    return {
        "items": [
            {
                "chunk_id": hit.chunk.chunk_id,
                "product_id": hit.chunk.product_id,
                "page_number": hit.chunk.page_number,
                "score": hit.score,
                "text": hit.chunk.text,
            }
            for hit in hits
        ]
    }


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
