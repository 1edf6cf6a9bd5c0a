"""
Job creation hooks for record writes, and backfill of existing records.

Job creation is best-effort. These functions are called after the
application has committed a record; they never raise and they do nothing
while AI features are disabled. `submit()` runs a hook on a background
thread so the record write does not wait on it.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Union

from .fields import get_field_label
from .records import CycleRecord, RecordStore, SessionRecord, cycle_text, session_snapshot
from .types import CycleJobRequest, FieldJobRequest, JobRequest, SessionJobRequest

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_LIMIT = 50

Record = Union[SessionRecord, CycleRecord]


class JobCreator:
    """
    Creates embedding jobs for sessions and cycles.

    Args:
        job_store: JobStore (its create_job_safe consults the vector store)
        enabled: Callable returning whether AI features are on
        record_store: Source of records for backfill
    """

    def __init__(
        self,
        job_store,
        enabled: Callable[[], bool] = lambda: True,
        record_store: Optional[RecordStore] = None,
    ):
        self._job_store = job_store
        self._enabled = enabled
        self.record_store = record_store
        self._executor: Optional[ThreadPoolExecutor] = None

    def _create(self, request: JobRequest) -> str | None:
        if not self._enabled():
            logger.debug("AI features disabled, not creating %s", request.job_id)
            return None
        try:
            return self._job_store.create_job_safe(request)
        except Exception as e:
            logger.warning("Could not create job %s: %s", request.job_id, e)
            return None

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def create_field_jobs(
        self, record: Record, columns: dict[str, str] | None = None,
    ) -> list[str]:
        """
        One field job per non-empty embeddable column of `record`.

        `columns` restricts creation to a subset (e.g. only the review answers
        just saved); by default all plan and review answers are used.
        """
        if columns is None:
            columns = {**record.plan_fields(), **record.review_fields()}
        if isinstance(record, CycleRecord):
            session_id, table, cycle_id = record.session_id, "cycles", record.id
        else:
            session_id, table, cycle_id = record.id, "sessions", None

        created = []
        for column, text in columns.items():
            if not text or not text.strip():
                continue
            try:
                request = FieldJobRequest(
                    session_id=session_id,
                    source_table=table,
                    source_row_id=record.id,
                    column_name=column,
                    text=text,
                    field_label=get_field_label(column),
                    cycle_id=cycle_id,
                )
            except ValueError as e:
                logger.warning("Invalid field job for %s.%s: %s", record.id, column, e)
                continue
            job_id = self._create(request)
            if job_id:
                created.append(job_id)
        return created

    def create_cycle_job(self, cycle: CycleRecord) -> str | None:
        try:
            request = CycleJobRequest(
                session_id=cycle.session_id, cycle_id=cycle.id, text=cycle_text(cycle),
            )
        except ValueError as e:
            logger.warning("Invalid cycle job for %s: %s", cycle.id, e)
            return None
        return self._create(request)

    def create_session_job(self, session: SessionRecord) -> str | None:
        try:
            request = SessionJobRequest(session_id=session.id, text=session_snapshot(session))
        except ValueError as e:
            logger.warning("Invalid session job for %s: %s", session.id, e)
            return None
        return self._create(request)

    def on_session_saved(self, session: SessionRecord) -> list[str]:
        """Field jobs for a saved session, plus the session job once reviewed."""
        created = self.create_field_jobs(session)
        if session.has_review():
            job_id = self.create_session_job(session)
            if job_id:
                created.append(job_id)
        return created

    def on_cycle_saved(self, cycle: CycleRecord) -> list[str]:
        created = self.create_field_jobs(cycle)
        if cycle.has_review():
            job_id = self.create_cycle_job(cycle)
            if job_id:
                created.append(job_id)
        return created

    # -------------------------------------------------------------------------
    # Fire-and-forget
    # -------------------------------------------------------------------------

    def submit(self, hook: Callable, *args) -> Future:
        """Run a hook (e.g. self.on_session_saved) on the background worker."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recall-jobs")
        future = self._executor.submit(hook, *args)
        future.add_done_callback(_log_hook_failure)
        return future

    def close(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    def backfill(self, limit: int = DEFAULT_BACKFILL_LIMIT) -> dict[str, int]:
        """
        Create missing jobs for the most recent completed sessions and ended
        cycles, up to `limit` of each.

        Records older than the scan window are not visited; run again with a
        larger limit to reach them.
        """
        result = {"sessions_processed": 0, "cycles_processed": 0, "jobs_created": 0}
        if not self._enabled():
            logger.info("AI features disabled, skipping backfill")
            return result
        if self.record_store is None:
            logger.warning("No record store configured, nothing to backfill")
            return result

        for session in self.record_store.recent_completed_sessions(limit):
            result["jobs_created"] += len(self.on_session_saved(session))
            result["sessions_processed"] += 1

        for cycle in self.record_store.recent_ended_cycles(limit):
            result["jobs_created"] += len(self.on_cycle_saved(cycle))
            result["cycles_processed"] += 1

        logger.info(
            "Backfill: %d sessions, %d cycles, %d jobs created",
            result["sessions_processed"], result["cycles_processed"], result["jobs_created"],
        )
        return result


def _log_hook_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("Background job creation failed: %s", exc)
