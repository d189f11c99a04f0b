"""Configuration models for the corrective RAG assistant."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrievalConfig(BaseModel):
    """Configures the manual collection and on-demand search tool."""

    collection_name: str = Field(default="manuals", min_length=1)
    search_tool_k: int = Field(default=5, ge=1, le=20)
    max_chunk_chars: int = Field(default=1500, ge=200)


class AgentConfig(BaseModel):
    """Configures the corrective loop and latency/groundedness targets."""

    max_iterations: int = Field(default=6, ge=1)
    max_tool_calls_per_step: int = Field(default=5, ge=1)
    target_latency_seconds: float = Field(default=8.0, gt=0.0)
    groundedness_target: float = Field(default=0.95, ge=0.0, le=1.0)


class Settings(BaseSettings):
    """Process-level settings read from the environment or `.env`."""

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    qdrant_url: str | None = None
    web_search_endpoint: str = "https://api.duckduckgo.com"
    http_timeout_seconds: float = Field(default=10.0, gt=0.0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
