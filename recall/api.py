"""
Public API for the recall embedding subsystem.

`EmbeddingManager` owns the job store, providers, workflows, scheduler and
search engine for one store directory. The application calls the
`on_*_saved` hooks after committing records, starts the scheduler, and
searches.

Example:
    with EmbeddingManager() as mgr:
        mgr.start()
        hits = mgr.cascading_search("what slowed me down", intent="distractions")
"""

import functools
import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .indexing import JobCreator
from .job_store import JobStore
from .logging_config import configure_ops_log, remove_ops_log
from .providers.base import EmbeddingProvider, ProviderSet, SummarizationProvider
from .rate_limiter import RateLimiter, get_rate_limiter
from .records import CycleRecord, RecordStore, SessionRecord
from .scheduler import EmbeddingScheduler, ProcessReport, check_connectivity
from .search import SearchEngine, SearchGroup, SearchOptions
from .types import Job, RankedResult, RawSearchResult
from .workflows import WORKFLOW_CLASSES

logger = logging.getLogger(__name__)

REMOTE_PROVIDERS = frozenset({"openai", "anthropic"})


class EmbeddingManager:
    """
    Embedding job pipeline and semantic search over one store.

    Args:
        store_path: Store directory. Uses RECALL_STORE_PATH or ~/.recall if
            not specified.
        config: Pre-loaded StoreConfig (skips filesystem config discovery)
        embedding_provider: Injected embedding provider
        summarization_provider: Injected summarization provider
        vector_store: Injected vector store (skips Chroma)
        record_store: Injected record store (skips the SQLite record view)
        rate_limiter: Injected limiter; defaults to the process-wide one
        connectivity: Probe returning False when providers are unreachable
        sleep: Sleep used for retry backoff
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        config: Optional[StoreConfig] = None,
        *,
        embedding_provider: Optional[EmbeddingProvider] = None,
        summarization_provider: Optional[SummarizationProvider] = None,
        vector_store=None,
        record_store: Optional[RecordStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        connectivity: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._config.path.mkdir(parents=True, exist_ok=True)

        self._ops_log_handler = configure_ops_log(self._config.path)

        if rate_limiter is None:
            rate_limiter = get_rate_limiter()
            rate_limiter.reconfigure(
                self._config.rate_limit.max_calls, self._config.rate_limit.window_seconds,
            )
        self._rate_limiter = rate_limiter

        self._providers = ProviderSet(
            self._config,
            embedding=embedding_provider,
            summarization=summarization_provider,
        )

        if record_store is None and self._config.records_database is not None:
            from .records import SQLiteRecordStore
            record_store = SQLiteRecordStore(self._config.records_database)
        self._record_store = record_store

        self._connectivity = connectivity
        self._sleep = sleep

        self._job_store = JobStore(self._config.jobs_path)
        self._creator = JobCreator(
            self._job_store,
            enabled=lambda: self._config.ai_enabled,
            record_store=self._record_store,
        )

        # Created on first use so read-only operations never load Chroma
        self._vector_store = vector_store
        if vector_store is not None:
            self._job_store.attach_vector_store(vector_store)
        self._scheduler: Optional[EmbeddingScheduler] = None
        self._search_engine: Optional[SearchEngine] = None
        self._init_lock = threading.Lock()
        self._closed = False

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def job_store(self) -> JobStore:
        return self._job_store

    @property
    def creator(self) -> JobCreator:
        return self._creator

    @property
    def vector_store(self):
        with self._init_lock:
            if self._vector_store is None:
                from .vector_store import ChromaVectorStore
                self._vector_store = ChromaVectorStore(self._config.vectors_path)
                self._job_store.attach_vector_store(self._vector_store)
            return self._vector_store

    def _connectivity_probe(self) -> Callable[[], bool]:
        if self._connectivity is not None:
            return self._connectivity
        names = {self._config.embedding.name, self._config.summarization.name}
        if not names & REMOTE_PROVIDERS:
            return lambda: True
        return functools.partial(
            check_connectivity, self._config.connectivity_url, self._config.connectivity_timeout,
        )

    @property
    def scheduler(self) -> EmbeddingScheduler:
        vector_store = self.vector_store
        with self._init_lock:
            if self._scheduler is None:
                sched = self._config.scheduler
                workflows = {
                    level: cls(
                        self._job_store,
                        vector_store,
                        self._providers,
                        self._rate_limiter,
                        max_retries=sched.max_retries,
                        backoff_base=sched.backoff_base_seconds,
                        concurrency=sched.concurrency,
                        sleep=self._sleep,
                    )
                    for level, cls in WORKFLOW_CLASSES.items()
                }
                self._scheduler = EmbeddingScheduler(
                    self._job_store,
                    workflows,
                    creator=self._creator,
                    connectivity=self._connectivity_probe(),
                    batch_size=sched.batch_size,
                    interval=sched.interval_seconds,
                    cleanup_interval=sched.cleanup_interval_seconds,
                )
            return self._scheduler

    @property
    def search_engine(self) -> SearchEngine:
        vector_store = self.vector_store
        with self._init_lock:
            if self._search_engine is None:
                self._search_engine = SearchEngine(
                    vector_store,
                    self._providers.embed,
                    self._rate_limiter,
                    self._record_store,
                )
            return self._search_engine

    # -------------------------------------------------------------------------
    # Record hooks
    # -------------------------------------------------------------------------

    def _ensure_dedup_source(self) -> None:
        """Attach the vector store so job creation can skip embedded ids."""
        try:
            self.vector_store
        except Exception as e:
            logger.warning("Vector store unavailable, creating jobs without it: %s", e)

    def on_session_saved(self, session: SessionRecord, *, wait: bool = False) -> Future | list[str]:
        """
        Queue embedding jobs for a committed session.

        Runs in the background unless `wait` is set, in which case the
        created job ids are returned.
        """
        self._ensure_dedup_source()
        if wait:
            return self._creator.on_session_saved(session)
        return self._creator.submit(self._creator.on_session_saved, session)

    def on_cycle_saved(self, cycle: CycleRecord, *, wait: bool = False) -> Future | list[str]:
        """Queue embedding jobs for a committed cycle."""
        self._ensure_dedup_source()
        if wait:
            return self._creator.on_cycle_saved(cycle)
        return self._creator.submit(self._creator.on_cycle_saved, cycle)

    def backfill(self, limit: int = 50) -> dict[str, int]:
        """Create jobs for recent records that have none yet."""
        self._ensure_dedup_source()
        return self.scheduler.backfill(limit)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def start(self, interval: float | None = None) -> None:
        if not self._config.ai_enabled:
            logger.info("AI features disabled, scheduler not started")
            return
        self.scheduler.start(interval)

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def process_once(self) -> ProcessReport:
        """Run a single processing pass in the calling thread."""
        return self.scheduler.process_once()

    def cleanup(self) -> dict[str, int]:
        return self._job_store.cleanup()

    def retry_failed(self, job_ids: list[str] | None = None) -> int:
        """Return error jobs to pending."""
        return self._job_store.retry_failed(job_ids)

    def failed_jobs(self, limit: int = 100) -> list[Job]:
        return self._job_store.list_failed(limit)

    def status(self) -> dict[str, int]:
        """Job counts by status, plus total."""
        return self._job_store.counts()

    def detailed_status(self) -> dict:
        if self._scheduler is not None:
            return self._scheduler.status()
        return {
            "is_running": False,
            "is_processing": False,
            "queue_counts": self._job_store.counts(),
            "statistics": self._job_store.statistics(),
        }

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(
        self, query: str, options: SearchOptions = SearchOptions(), intent: str | None = None,
    ) -> list[RankedResult]:
        """Full search pipeline. Returns [] when AI is off or search fails."""
        if not self._config.ai_enabled:
            return []
        try:
            return self.search_engine.search(query, options, intent=intent)
        except Exception as e:
            logger.warning("Search failed: %s", e)
            return []

    def cascading_search(
        self, query: str, intent: str | None = None, k: int = 8,
    ) -> list[RawSearchResult]:
        """Level cascade. Returns [] when AI is off or search fails."""
        if not self._config.ai_enabled:
            return []
        try:
            return self.search_engine.cascading_search(query, intent, k)
        except Exception as e:
            logger.warning("Cascading search failed: %s", e)
            return []

    def grouped_search(
        self, query: str, by: str = "session", options: SearchOptions = SearchOptions(),
    ) -> list[SearchGroup]:
        if not self._config.ai_enabled:
            return []
        try:
            return self.search_engine.grouped_search(query, by, options)
        except Exception as e:
            logger.warning("Grouped search failed: %s", e)
            return []

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def reset_providers(self) -> None:
        """Rebuild provider clients on next use (after a key change)."""
        self._providers.reset()

    def reconfigure(self, config: StoreConfig) -> None:
        """Swap in a new config for providers, limits and the AI toggle."""
        self._config = config
        self._providers.reconfigure(config)
        self._rate_limiter.reconfigure(config.rate_limit.max_calls, config.rate_limit.window_seconds)

    def set_ai_enabled(self, enabled: bool) -> None:
        self._config.ai_enabled = enabled
        if not enabled:
            self.stop()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop background work and release stores."""
        if self._closed:
            return
        self._closed = True
        self.stop()
        self._creator.close()
        self._job_store.close()
        if self._record_store is not None and hasattr(self._record_store, "close"):
            self._record_store.close()
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
