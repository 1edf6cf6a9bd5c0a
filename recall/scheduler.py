"""
Background scheduler for embedding jobs.

Two periodic tasks run on their own threads: the processing task (every
30s by default) drains pending jobs through the workflows, and the cleanup
task (every 4h) prunes old done/error jobs. Both run once immediately on
start. A processing pass that finds the provider unreachable returns
before touching any job.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from .types import Job, Level
from .workflows import BoundedRetryWorkflow, WorkflowResult

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 4 * 60 * 60
DEFAULT_BATCH_SIZE = 50


def check_connectivity(url: str, timeout: float = 5.0) -> bool:
    """True if a HEAD request to `url` gets any HTTP response. Empty url: True."""
    if not url:
        return True
    try:
        response = httpx.head(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.debug("Connectivity probe failed: %s", e)
        return False
    return response.status_code < 500


class PeriodicTask:
    """
    Runs `func` on a daemon thread every `interval` seconds.

    The first run happens immediately on start(). `trigger()` wakes the
    loop early; `stop()` ends it and joins the thread.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self._func = func
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"recall-{self.name}", daemon=True,
        )
        self._thread.start()

    def trigger(self) -> None:
        self._wake.set()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("%s task did not stop within %ss", self.name, timeout)
            self._thread = None

    def _run(self) -> None:
        try:
            self._func()
        except Exception:
            logger.exception("%s task failed", self.name)

    def _loop(self) -> None:
        # The first run happens even when stop() arrived before the thread did
        self._run()
        while not self._stop.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            self._run()


@dataclass
class ProcessReport:
    """Outcome of one processing pass."""
    skipped: bool = False
    reason: str | None = None
    processed: int = 0
    errors: int = 0
    results: dict[str, WorkflowResult] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "processed": self.processed,
            "errors": self.errors,
            "workflows": {
                name: {
                    "processed": r.processed,
                    "errors": r.errors,
                    "retries": r.retries,
                    "failed_ids": r.failed_ids,
                }
                for name, r in self.results.items()
            },
        }


class EmbeddingScheduler:
    """
    Supervises the processing and cleanup tasks.

    Args:
        job_store: JobStore to drain
        workflows: Workflow per level
        creator: JobCreator used by backfill()
        connectivity: Callable returning False when the provider is unreachable
        batch_size: Pending jobs pulled per pass
        interval: Seconds between processing passes
        cleanup_interval: Seconds between cleanups
    """

    def __init__(
        self,
        job_store,
        workflows: dict[Level, BoundedRetryWorkflow],
        *,
        creator=None,
        connectivity: Callable[[], bool] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ):
        self.job_store = job_store
        self.workflows = workflows
        self.creator = creator
        self._connectivity = connectivity or (lambda: True)
        self.batch_size = batch_size
        self._processing_lock = threading.Lock()
        self._claims_released = False
        self._processor = PeriodicTask("processor", interval, self.process_once)
        self._cleaner = PeriodicTask("cleanup", cleanup_interval, self.run_cleanup)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._processor.is_running

    @property
    def is_processing(self) -> bool:
        return self._processing_lock.locked()

    def start(self, interval: float | None = None) -> None:
        """Start both periodic tasks; both run once immediately."""
        if self.is_running:
            return
        if interval is not None:
            self._processor.interval = interval
        self._processor.start()
        self._cleaner.start()
        logger.info("Scheduler started (interval %.0fs)", self._processor.interval)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop both tasks; waits for an in-flight pass to finish."""
        self._processor.stop(timeout)
        self._cleaner.stop(timeout)
        logger.info("Scheduler stopped")

    # -------------------------------------------------------------------------
    # Work
    # -------------------------------------------------------------------------

    def _is_online(self) -> bool:
        try:
            return bool(self._connectivity())
        except Exception as e:
            logger.warning("Connectivity check raised: %s", e)
            return False

    def process_once(self) -> ProcessReport:
        """Run one pass over up to `batch_size` pending jobs."""
        if not self._processing_lock.acquire(blocking=False):
            return ProcessReport(skipped=True, reason="busy")
        try:
            if not self._is_online():
                logger.info("Provider unreachable, skipping processing pass")
                return ProcessReport(skipped=True, reason="offline")

            self._release_claims()
            jobs = self.job_store.list_pending(self.batch_size)
            report = ProcessReport()
            if not jobs:
                return report

            by_level: dict[Level, list[Job]] = {}
            for job in jobs:
                by_level.setdefault(Level(job.level), []).append(job)

            for level in (Level.FIELD, Level.CYCLE, Level.SESSION):
                level_jobs = by_level.get(level)
                if level_jobs:
                    self._run_level(level, level_jobs, report)

            logger.info(
                "Processed %d jobs (%d done, %d errors)",
                len(jobs), report.processed, report.errors,
            )
            return report
        finally:
            self._processing_lock.release()

    def _release_claims(self) -> None:
        """
        Return claims no running pass owns to pending.

        Called under the processing lock, so no claim belongs to a live
        pass. The first pass in a process releases every claim left by the
        previous process; later passes release only claims older than the
        stale threshold, stranded by a workflow that raised mid-run.
        """
        if self._claims_released:
            self.job_store.recover_stale()
        else:
            self.job_store.release_claims()
            self._claims_released = True

    def _run_level(self, level: Level, jobs: list[Job], report: ProcessReport) -> None:
        workflow = self.workflows.get(level)
        if workflow is None:
            logger.warning("No workflow for %s jobs", level.value)
            return
        # Field jobs are one batch; cycle and session jobs run one at a time
        batches = [jobs] if level is Level.FIELD else [[job] for job in jobs]
        for batch in batches:
            try:
                result = workflow.run(batch)
            except Exception:
                logger.exception("%s workflow raised", level.value)
                result = WorkflowResult(workflow=level.value, success=False, errors=len(batch))
            report.processed += result.processed
            report.errors += result.errors
            previous = report.results.get(level.value)
            report.results[level.value] = previous.merge(result) if previous else result

    def run_cleanup(self) -> dict[str, int]:
        return self.job_store.cleanup()

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "queue_counts": self.job_store.counts(),
            "statistics": self.job_store.statistics(),
        }

    def backfill(self, limit: int = 50) -> dict[str, int]:
        """Create jobs for existing records, then wake the processor."""
        if self.creator is None:
            raise RuntimeError("Scheduler has no job creator for backfill")
        result = self.creator.backfill(limit)
        if result["jobs_created"] and self.is_running:
            self._processor.trigger()
        return result
