"""Corrective RAG assistant package."""

from .config import AgentConfig, RetrievalConfig
from .types import ChatbotAnswer, Citation, ManualChunk, Product

__all__ = [
    "AgentConfig",
    "ChatbotAnswer",
    "Citation",
    "ManualChunk",
    "Product",
    "RetrievalConfig",
]
