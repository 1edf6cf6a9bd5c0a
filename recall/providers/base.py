"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import json
import logging
import threading
from typing import Any, Protocol, runtime_checkable

from ..errors import ProviderError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider must be used for indexing and querying; vectors from
    different models are not comparable.
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises on transient or permanent failure; callers own the retry.
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


# -----------------------------------------------------------------------------
# Summarization
# -----------------------------------------------------------------------------

SESSION_SUMMARY_SYSTEM_PROMPT = (
    "You summarize personal work sessions for later semantic search. "
    "Write plain prose without headings or preamble."
)

SESSION_SUMMARY_INSTRUCTIONS = (
    "Summarize this work session in 150 words or less, focusing on key "
    "objectives, outcomes, and insights. If any fields say N/A, the user "
    "did not fill them in."
)


def _na(value: Any) -> str:
    if value is None:
        return "N/A"
    text = str(value).strip()
    return text if text else "N/A"


def build_session_summary_prompt(snapshot: str) -> str:
    """
    Render a session snapshot (JSON from records.session_snapshot) as the
    user prompt for summarization.

    Content that is not a JSON snapshot is passed through after the
    instructions unchanged.
    """
    try:
        data = json.loads(snapshot)
    except (json.JSONDecodeError, TypeError):
        return f"{SESSION_SUMMARY_INSTRUCTIONS}\n\n{snapshot}"
    if not isinstance(data, dict):
        return f"{SESSION_SUMMARY_INSTRUCTIONS}\n\n{snapshot}"

    intentions = data.get("intentions") or {}
    review = data.get("review") or {}
    stats = data.get("stats") or {}
    completed = stats.get("cycles_completed") or 0
    planned = stats.get("cycles_planned") or 0
    minutes = (stats.get("work_minutes") or 0) * completed

    return f"""{SESSION_SUMMARY_INSTRUCTIONS}

Intentions:
- Objective: {_na(intentions.get("objective"))}
- Importance: {_na(intentions.get("importance"))}
- Definition of done: {_na(intentions.get("definition_of_done"))}
- Hazards: {_na(intentions.get("hazards"))}
- Other notes: {_na(intentions.get("misc_notes"))}

Review:
- Accomplishments: {_na(review.get("accomplishments"))}
- Comparison to normal output: {_na(review.get("comparison"))}
- Obstacles: {_na(review.get("obstacles"))}
- What went well: {_na(review.get("successes"))}
- Takeaways: {_na(review.get("takeaways"))}

Stats: {completed}/{planned} cycles completed; Worked for {minutes} minutes total"""


@runtime_checkable
class SummarizationProvider(Protocol):
    """
    Compresses a session snapshot into a short prose summary.

    The summary (not the raw snapshot) is what gets embedded for
    session-level search.
    """

    def summarize(
        self,
        content: str,
        *,
        max_length: int = 500,
        context: str | None = None,
    ) -> str:
        ...

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 4096,
    ) -> str | None:
        """Raw system+user prompt; None for providers without an LLM."""
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and instantiated from configuration,
    so `recall.toml` can name a provider without code changes.

    Example:
        registry = get_registry()
        provider = registry.create_embedding("openai", {"model": "text-embedding-3-small"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._summarization_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Import provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Third-party clients are imported inside provider constructors,
        # so importing these modules is always safe
        from . import embeddings, llm  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        self._embedding_providers[name] = provider_class

    def register_summarization(self, name: str, provider_class: type) -> None:
        self._summarization_providers[name] = provider_class

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(sorted(providers)) or "none"
            raise ProviderError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise ProviderError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise ProviderError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_summarization(self, name: str, params: dict | None = None) -> SummarizationProvider:
        self._ensure_providers_loaded()
        return self._create_provider("summarization", name, self._summarization_providers, params)

    def list_embedding_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._embedding_providers)

    def list_summarization_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._summarization_providers)


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


# -----------------------------------------------------------------------------
# Provider ownership
# -----------------------------------------------------------------------------

class ProviderSet:
    """
    The live embedding and summarization providers for one manager.

    Providers are created lazily from config on first use. `reset()` drops
    configured instances so the next use builds fresh clients (after an API
    key change, say); `reconfigure()` also swaps the config. Providers passed
    in explicitly are kept across resets.
    """

    def __init__(
        self,
        config=None,
        *,
        embedding: EmbeddingProvider | None = None,
        summarization: SummarizationProvider | None = None,
        registry: ProviderRegistry | None = None,
    ):
        self._config = config
        self._registry = registry or get_registry()
        self._injected_embedding = embedding
        self._injected_summarization = summarization
        self._embedding = embedding
        self._summarization = summarization
        self._lock = threading.Lock()

    @property
    def embedding(self) -> EmbeddingProvider:
        with self._lock:
            if self._embedding is None:
                if self._config is None:
                    raise ProviderError("No embedding provider configured")
                cfg = self._config.embedding
                logger.info("Creating embedding provider %s", cfg.name)
                self._embedding = self._registry.create_embedding(cfg.name, cfg.params)
            return self._embedding

    @property
    def summarization(self) -> SummarizationProvider:
        with self._lock:
            if self._summarization is None:
                if self._config is None:
                    raise ProviderError("No summarization provider configured")
                cfg = self._config.summarization
                logger.info("Creating summarization provider %s", cfg.name)
                self._summarization = self._registry.create_summarization(cfg.name, cfg.params)
            return self._summarization

    def embed(self, text: str) -> list[float]:
        return self.embedding.embed(text)

    def summarize(self, text: str) -> str:
        return self.summarization.summarize(text)

    def reset(self) -> None:
        """Drop configured provider instances; they are rebuilt on next use."""
        with self._lock:
            self._embedding = self._injected_embedding
            self._summarization = self._injected_summarization
        logger.debug("Provider set reset")

    def reconfigure(self, config) -> None:
        with self._lock:
            self._config = config
        self.reset()
