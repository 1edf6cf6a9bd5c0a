"""
Embedding workflows.

Each workflow turns claimed jobs into stored vectors through a small state
machine with bounded retry:

    PREPARE -> GENERATE -> COMPLETE
                  |  ^
                  v  |
                 RETRY        (after max_retries: FAILED)

PREPARE claims the jobs (pending -> processing) and produces the text to
embed. GENERATE embeds and upserts each item independently; items that
fail are retried after `backoff_base * 2**retry` seconds, and only those
items. When retries run out the remaining failures are marked error.

The three workflows differ only in PREPARE:

* FieldWorkflow: a batch of field answers, embedded verbatim, fanned out.
* CycleWorkflow: one cycle, text already assembled from plan and review.
* SessionWorkflow: one session, summarized first; the summary is embedded
  and stored. If summarization fails the raw snapshot is used instead.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .types import Job, Level, VectorRecord

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0


class Step(str, Enum):
    PREPARE = "prepare"
    GENERATE = "generate"
    RETRY = "retry"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STEPS = frozenset({Step.COMPLETE, Step.FAILED})

# (job, text to embed)
WorkItem = tuple[Job, str]


@dataclass
class WorkflowResult:
    """Outcome of one workflow run."""
    workflow: str
    success: bool
    processed: int = 0
    errors: int = 0
    retries: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def merge(self, other: "WorkflowResult") -> "WorkflowResult":
        return WorkflowResult(
            workflow=self.workflow,
            success=self.success and other.success,
            processed=self.processed + other.processed,
            errors=self.errors + other.errors,
            retries=max(self.retries, other.retries),
            failed_ids=self.failed_ids + other.failed_ids,
        )


@dataclass
class _Run:
    """Mutable state of one run, threaded through the transitions."""
    jobs: list[Job]
    pending: list[WorkItem] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    retry_count: int = 0
    done: int = 0


class BoundedRetryWorkflow:
    """
    Shared state machine; subclasses override `prepare()`.

    Args:
        job_store: JobStore used for status transitions
        vector_store: VectorStore receiving the embeddings
        providers: Object with `.embedding` (and `.summarization` for sessions),
            normally a ProviderSet
        rate_limiter: Gate acquired before every provider call
        max_retries: Retry rounds after the first attempt
        backoff_base: Seconds; round n waits backoff_base * 2**n
        concurrency: Worker threads for fan-out within a batch
        sleep: Injectable sleep for the backoff
    """

    name = "workflow"
    level: Level | None = None

    def __init__(
        self,
        job_store,
        vector_store,
        providers,
        rate_limiter,
        *,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        concurrency: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.job_store = job_store
        self.vector_store = vector_store
        self.providers = providers
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.concurrency = max(1, concurrency)
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def run(self, jobs: list[Job]) -> WorkflowResult:
        state = _Run(jobs=list(jobs))
        step = Step.PREPARE
        while step not in TERMINAL_STEPS:
            step = self.transition(step, state)

        if step is Step.FAILED:
            for job_id, message in state.failures.items():
                self.job_store.mark_error(job_id, message)
        result = WorkflowResult(
            workflow=self.name,
            success=step is Step.COMPLETE,
            processed=state.done,
            errors=len(state.failures) if step is Step.FAILED else 0,
            retries=state.retry_count,
            failed_ids=sorted(state.failures) if step is Step.FAILED else [],
        )
        logger.info(
            "%s workflow: %d done, %d errors, %d retries",
            self.name, result.processed, result.errors, result.retries,
        )
        return result

    def transition(self, step: Step, state: _Run) -> Step:
        """Advance one step, mutating `state`. Returns the next step."""
        if step is Step.PREPARE:
            state.pending = self.prepare(state.jobs)
            return Step.GENERATE if state.pending else Step.COMPLETE

        if step is Step.GENERATE:
            state.failures = self.generate(state.pending)
            state.done += len(state.pending) - len(state.failures)
            if not state.failures:
                return Step.COMPLETE
            if state.retry_count < self.max_retries:
                return Step.RETRY
            return Step.FAILED

        if step is Step.RETRY:
            delay = self.backoff_base * (2 ** state.retry_count)
            logger.info(
                "%s workflow: retrying %d failed jobs in %.1fs (retry %d/%d)",
                self.name, len(state.failures), delay,
                state.retry_count + 1, self.max_retries,
            )
            if delay > 0:
                self._sleep(delay)
            state.retry_count += 1
            state.pending = [item for item in state.pending if item[0].id in state.failures]
            return Step.GENERATE

        raise ValueError(f"No transition from {step}")

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def prepare(self, jobs: list[Job]) -> list[WorkItem]:
        """Claim jobs and return the text to embed for each claimed job."""
        items = []
        for job in jobs:
            if self.job_store.mark_processing(job.id):
                items.append((job, job.text))
        return items

    def generate(self, items: list[WorkItem]) -> dict[str, str]:
        """Embed and store each item. Returns {job_id: error} for failures."""
        if len(items) > 1 and self.concurrency > 1:
            with ThreadPoolExecutor(
                max_workers=min(self.concurrency, len(items)),
                thread_name_prefix=f"recall-{self.name}",
            ) as pool:
                outcomes = list(pool.map(self._generate_one, items))
        else:
            outcomes = [self._generate_one(item) for item in items]
        return {job_id: error for job_id, error in outcomes if error is not None}

    def _generate_one(self, item: WorkItem) -> tuple[str, Optional[str]]:
        job, text = item
        try:
            if not text or not text.strip():
                raise ValueError("empty text")
            self.rate_limiter.wait_for_slot()
            vector = self.providers.embedding.embed(text)
            self.vector_store.upsert(VectorRecord.from_job(job, vector, text))
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.warning("Embedding %s failed: %s", job.id, message)
            self.job_store.record_attempt(job.id, message)
            return job.id, message
        self.job_store.record_attempt(job.id)
        self.job_store.mark_done(job.id)
        return job.id, None


class FieldWorkflow(BoundedRetryWorkflow):
    """Batch of field answers, fanned out across worker threads."""
    name = "field"
    level = Level.FIELD


class CycleWorkflow(BoundedRetryWorkflow):
    """One cycle per run; the job text is the assembled START/END text."""
    name = "cycle"
    level = Level.CYCLE

    def run_one(self, job: Job) -> WorkflowResult:
        return self.run([job])


class SessionWorkflow(BoundedRetryWorkflow):
    """One session per run: summarize, then embed the summary."""
    name = "session"
    level = Level.SESSION

    def run_one(self, job: Job) -> WorkflowResult:
        return self.run([job])

    def prepare(self, jobs: list[Job]) -> list[WorkItem]:
        return [(job, self.summarize(job)) for job, _ in super().prepare(jobs)]

    def summarize(self, job: Job) -> str:
        """Summary of the session snapshot, or the snapshot itself on failure."""
        try:
            self.rate_limiter.wait_for_slot()
            summary = self.providers.summarization.summarize(job.text)
        except Exception as e:
            logger.warning("Summarizing %s failed, embedding raw snapshot: %s", job.id, e)
            return job.text
        if not summary or not summary.strip():
            logger.warning("Empty summary for %s, embedding raw snapshot", job.id)
            return job.text
        return summary.strip()


WORKFLOW_CLASSES = {
    Level.FIELD: FieldWorkflow,
    Level.CYCLE: CycleWorkflow,
    Level.SESSION: SessionWorkflow,
}
