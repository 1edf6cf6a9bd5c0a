"""Tests for the provider registry and the per-manager provider set."""

import pytest

from recall.config import ProviderConfig, StoreConfig
from recall.errors import ProviderError
from recall.providers.base import ProviderRegistry, ProviderSet, get_registry
from recall.providers.llm import PassthroughSummarization

from tests.conftest import MockEmbeddingProvider


class TestRegistry:

    def test_builtin_providers_registered(self):
        registry = get_registry()
        assert {"openai", "sentence-transformers"} <= set(registry.list_embedding_providers())
        assert {"openai", "anthropic", "passthrough"} <= set(registry.list_summarization_providers())

    def test_unknown_provider(self):
        with pytest.raises(ProviderError, match="Unknown embedding provider"):
            get_registry().create_embedding("nope")

    def test_constructor_failure_wrapped(self):
        registry = ProviderRegistry()
        registry._lazy_loaded = True

        class NeedsKey:
            def __init__(self):
                raise ValueError("API key required")

        registry.register_embedding("needs-key", NeedsKey)
        with pytest.raises(ProviderError, match="API key required"):
            registry.create_embedding("needs-key")

    def test_params_passed_through(self):
        provider = get_registry().create_summarization("passthrough", {"max_chars": 42})
        assert isinstance(provider, PassthroughSummarization)
        assert provider.max_chars == 42

    def test_openai_without_key(self, monkeypatch):
        pytest.importorskip("openai")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("RECALL_OPENAI_API_KEY", raising=False)
        with pytest.raises(ProviderError):
            get_registry().create_embedding("openai")


class TestProviderSet:

    def test_injected_provider_used(self):
        embedder = MockEmbeddingProvider()
        providers = ProviderSet(embedding=embedder)
        assert providers.embed("hello") == embedder.embed("hello")

    def test_no_config_no_provider(self):
        with pytest.raises(ProviderError):
            ProviderSet().embedding

    def test_created_lazily_from_config(self, tmp_path):
        config = StoreConfig(path=tmp_path, summarization=ProviderConfig("passthrough", {"max_chars": 10}))
        providers = ProviderSet(config)
        first = providers.summarization
        assert isinstance(first, PassthroughSummarization)
        assert providers.summarization is first

    def test_reset_rebuilds_configured_keeps_injected(self, tmp_path):
        embedder = MockEmbeddingProvider()
        config = StoreConfig(path=tmp_path, summarization=ProviderConfig("passthrough"))
        providers = ProviderSet(config, embedding=embedder)
        first = providers.summarization

        providers.reset()

        assert providers.summarization is not first
        assert providers.embedding is embedder

    def test_reconfigure(self, tmp_path):
        providers = ProviderSet(StoreConfig(path=tmp_path, summarization=ProviderConfig("passthrough")))
        providers.reconfigure(StoreConfig(
            path=tmp_path, summarization=ProviderConfig("passthrough", {"max_chars": 5}),
        ))
        assert providers.summarization.max_chars == 5
