"""
Embedding providers.
"""

import os

from .base import get_registry


# Known output sizes; other models are probed on first use
_OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    Requires: RECALL_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    Default model is text-embedding-3-small.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        timeout: float = 30.0,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        self.model = model
        self.model_name = model
        key = api_key or os.environ.get("RECALL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set RECALL_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        # Retries are owned by the workflow engine, not the client
        self._client = OpenAI(api_key=key, timeout=timeout, max_retries=0)
        self._dimension = _OPENAI_DIMENSIONS.get(model)

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        response = self._client.embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self._client.embeddings.create(model=self.model, input=texts)
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]


class SentenceTransformerEmbedding:
    """
    Local embedding provider using sentence-transformers.

    Runs offline; the model is downloaded on first use.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2"):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise RuntimeError(
                "SentenceTransformerEmbedding requires 'sentence-transformers' library"
            )
        self.model_name = model
        self._model = SentenceTransformer(model)

    @property
    def dimension(self) -> int:
        return self._model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return self._model.encode(text).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._model.encode(texts).tolist()


_registry = get_registry()
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
