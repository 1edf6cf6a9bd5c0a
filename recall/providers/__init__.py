"""Embedding and summarization providers."""

from .base import (
    EmbeddingProvider,
    ProviderRegistry,
    ProviderSet,
    SummarizationProvider,
    build_session_summary_prompt,
    get_registry,
)

__all__ = [
    "EmbeddingProvider",
    "ProviderRegistry",
    "ProviderSet",
    "SummarizationProvider",
    "build_session_summary_prompt",
    "get_registry",
]
