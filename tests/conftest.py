"""
Shared pytest fixtures for recall tests.

Provides deterministic mock providers and in-memory stores so tests never
load ML models, call remote APIs or open ChromaDB.
"""

import hashlib
import math
import re
from pathlib import Path

import pytest

from recall.api import EmbeddingManager
from recall.config import StoreConfig
from recall.job_store import JobStore
from recall.providers.base import ProviderSet
from recall.rate_limiter import RateLimiter
from recall.records import CycleRecord, SessionRecord
from recall.types import Level, RankedResult, RawSearchResult, VectorRecord
from recall.vector_store import FILTER_KEYS, record_metadata, result_from_row


_WORD = re.compile(r"\w+")


class MockEmbeddingProvider:
    """
    Deterministic bag-of-words embedding.

    Each word is hashed into one of `dimension` buckets, so texts sharing
    words are close in cosine distance and identical texts are identical.
    """

    dimension = 64
    model_name = "mock-bow"

    def __init__(self):
        self.embed_calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        self.texts.append(text)
        vector = [0.0] * self.dimension
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class FlakyEmbeddingProvider(MockEmbeddingProvider):
    """Fails for texts containing `marker` the first `failures` times each."""

    def __init__(self, marker: str = "FAIL", failures: int = 1):
        super().__init__()
        self.marker = marker
        self.failures = failures
        self._seen: dict[str, int] = {}

    def embed(self, text: str) -> list[float]:
        if self.marker in text:
            count = self._seen.get(text, 0)
            self._seen[text] = count + 1
            if count < self.failures:
                raise RuntimeError(f"provider error for {text!r}")
        return super().embed(text)


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Always raises."""

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise RuntimeError("provider unavailable")


class MockSummarizationProvider:
    """Returns a fixed-prefix summary and records its inputs."""

    def __init__(self, summary: str | None = None):
        self.summary = summary
        self.calls: list[str] = []

    def summarize(self, content: str, *, max_length: int = 500, context: str | None = None) -> str:
        self.calls.append(content)
        if self.summary is not None:
            return self.summary
        return f"Summary: {content[:100]}"

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        return None


class FailingSummarizationProvider(MockSummarizationProvider):

    def summarize(self, content: str, *, max_length: int = 500, context: str | None = None) -> str:
        self.calls.append(content)
        raise RuntimeError("summarizer down")


class MemoryVectorStore:
    """In-memory vector store with cosine distance and equality filters."""

    def __init__(self):
        self.records: dict[str, VectorRecord] = {}
        self.queries: list[dict] = []

    def upsert(self, record: VectorRecord) -> None:
        self.records[record.id] = record

    def exists(self, id: str) -> bool:
        return id in self.records

    def count(self) -> int:
        return len(self.records)

    def query(self, vector, filters=None, limit: int = 10) -> list[RawSearchResult]:
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        for key in filters:
            if key not in FILTER_KEYS:
                raise ValueError(f"Unsupported vector filter: {key}")
        self.queries.append(dict(filters))
        hits = []
        for record in self.records.values():
            meta = record_metadata(record)
            if any(meta.get(k) != (v.value if hasattr(v, "value") else v) for k, v in filters.items()):
                continue
            hits.append(result_from_row(record.id, record.text, meta, 1.0 - _cosine(vector, record.vector)))
        hits.sort(key=lambda r: r.distance)
        return hits[:limit]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class MemoryRecordStore:
    """In-memory RecordStore."""

    def __init__(self, sessions=(), cycles=()):
        self.sessions: dict[str, SessionRecord] = {s.id: s for s in sessions}
        self.cycles: dict[str, CycleRecord] = {c.id: c for c in cycles}

    def add(self, record) -> None:
        if isinstance(record, CycleRecord):
            self.cycles[record.id] = record
        else:
            self.sessions[record.id] = record

    def get_session(self, session_id):
        return self.sessions.get(session_id)

    def get_cycle(self, cycle_id):
        return self.cycles.get(cycle_id)

    def list_cycles(self, session_id):
        cycles = [c for c in self.cycles.values() if c.session_id == session_id]
        return sorted(cycles, key=lambda c: c.index or 0)

    def recent_completed_sessions(self, limit):
        done = [s for s in self.sessions.values() if s.completed]
        return sorted(done, key=lambda s: s.started_at or "", reverse=True)[:limit]

    def recent_ended_cycles(self, limit):
        ended = [c for c in self.cycles.values() if c.ended_at]
        return sorted(ended, key=lambda c: c.started_at or "", reverse=True)[:limit]


def make_session(session_id: str = "s1", **fields) -> SessionRecord:
    defaults = {
        "started_at": "2026-01-10T09:00:00",
        "work_minutes": 25,
        "cycles_planned": 4,
        "cycles_completed": 3,
        "completed": True,
        "plan_objective": "Write the quarterly report draft",
        "plan_importance": "The team needs the numbers by Friday",
    }
    defaults.update(fields)
    return SessionRecord(id=session_id, **defaults)


def make_cycle(cycle_id: str = "c1", session_id: str = "s1", **fields) -> CycleRecord:
    defaults = {
        "index": 1,
        "plan_goal": "Outline the report sections",
        "started_at": "2026-01-10T09:00:00",
        "ended_at": "2026-01-10T09:25:00",
    }
    defaults.update(fields)
    return CycleRecord(id=cycle_id, session_id=session_id, **defaults)


def make_raw(id: str = "field:s1:plan_objective", level=Level.FIELD, session_id: str = "s1",
             text: str = "Write the report", distance: float = 0.2, **fields) -> RawSearchResult:
    return RawSearchResult(id=id, level=Level(level), session_id=session_id,
                           text=text, distance=distance, **fields)


def make_ranked(id: str = "field:s1:plan_objective", score: float = 0.5, **fields) -> RankedResult:
    raw = make_raw(id, **fields)
    return RankedResult(raw=raw, vector_score=raw.vector_score, composite_score=score)


def add_vector(store, embedder, id: str, level, session_id: str, text: str, **fields) -> None:
    """Embed `text` and upsert it as if a job had completed."""
    store.upsert(VectorRecord(
        id=id, level=Level(level), session_id=session_id,
        vector=embedder.embed(text), text=text, **fields,
    ))


@pytest.fixture
def embedder():
    return MockEmbeddingProvider()


@pytest.fixture
def summarizer():
    return MockSummarizationProvider()


@pytest.fixture
def vector_store():
    return MemoryVectorStore()


@pytest.fixture
def record_store():
    return MemoryRecordStore()


@pytest.fixture
def job_store(tmp_path: Path):
    store = JobStore(tmp_path / "jobs.db")
    yield store
    store.close()


@pytest.fixture
def limiter():
    return RateLimiter(max_calls=10_000, window_seconds=60)


@pytest.fixture
def providers(embedder, summarizer):
    return ProviderSet(embedding=embedder, summarization=summarizer)


@pytest.fixture
def manager(tmp_path, embedder, summarizer, vector_store, record_store, limiter):
    """EmbeddingManager wired entirely to in-memory fakes."""
    mgr = EmbeddingManager(
        config=StoreConfig(path=tmp_path / "store"),
        embedding_provider=embedder,
        summarization_provider=summarizer,
        vector_store=vector_store,
        record_store=record_store,
        rate_limiter=limiter,
        connectivity=lambda: True,
        sleep=lambda seconds: None,
    )
    yield mgr
    mgr.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (loading real ML models)"
    )
