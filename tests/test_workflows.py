"""Tests for the bounded-retry embedding workflows."""

import pytest

from recall.providers.base import ProviderSet
from recall.records import session_snapshot
from recall.types import CycleJobRequest, FieldJobRequest, JobStatus, SessionJobRequest
from recall.workflows import (
    CycleWorkflow,
    FieldWorkflow,
    SessionWorkflow,
    Step,
    WORKFLOW_CLASSES,
)

from tests.conftest import (
    FailingSummarizationProvider,
    FlakyEmbeddingProvider,
    MockSummarizationProvider,
    make_session,
)


def add_field_jobs(job_store, texts):
    for i, text in enumerate(texts):
        job_store.create_job(FieldJobRequest(
            session_id="s1", source_table="sessions", source_row_id="s1",
            column_name=f"col{i}", text=text,
        ))
    return job_store.list_pending()


def workflow(cls, job_store, vector_store, embedding, limiter, summarization=None, **kwargs):
    providers = ProviderSet(
        embedding=embedding, summarization=summarization or MockSummarizationProvider(),
    )
    kwargs.setdefault("backoff_base", 0)
    return cls(job_store, vector_store, providers, limiter, **kwargs)


class TestFieldWorkflow:
    """Batch embedding with per-job failure isolation."""

    def test_all_succeed(self, job_store, vector_store, embedder, limiter):
        jobs = add_field_jobs(job_store, ["alpha", "beta", "gamma"])
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)

        result = wf.run(jobs)

        assert result.success
        assert result.processed == 3
        assert result.errors == 0
        assert result.retries == 0
        assert vector_store.count() == 3
        assert job_store.counts()["done"] == 3

    def test_failures_are_isolated(self, job_store, vector_store, limiter):
        """Two persistently failing jobs do not stop the other three."""
        jobs = add_field_jobs(job_store, ["one", "FAIL two", "three", "FAIL four", "five"])
        provider = FlakyEmbeddingProvider(failures=100)
        wf = workflow(FieldWorkflow, job_store, vector_store, provider, limiter)

        result = wf.run(jobs)

        assert not result.success
        assert result.processed == 3
        assert result.errors == 2
        assert result.retries == 3
        assert sorted(result.failed_ids) == ["field:s1:col1", "field:s1:col3"]
        assert vector_store.count() == 3
        assert job_store.counts() == {
            "pending": 0, "processing": 0, "done": 3, "error": 2, "total": 5,
        }

    def test_exhausted_job_records_every_attempt(self, job_store, vector_store, limiter):
        jobs = add_field_jobs(job_store, ["FAIL always"])
        provider = FlakyEmbeddingProvider(failures=100)
        wf = workflow(FieldWorkflow, job_store, vector_store, provider, limiter, max_retries=3)

        wf.run(jobs)

        job = job_store.get("field:s1:col0")
        assert job.status is JobStatus.ERROR
        assert job.attempts == 4  # first try plus three retries
        assert "provider error" in job.error_message

    def test_transient_failure_recovers(self, job_store, vector_store, limiter):
        jobs = add_field_jobs(job_store, ["ok", "FAIL once"])
        provider = FlakyEmbeddingProvider(failures=1)
        wf = workflow(FieldWorkflow, job_store, vector_store, provider, limiter)

        result = wf.run(jobs)

        assert result.success
        assert result.processed == 2
        assert result.retries == 1
        assert job_store.get("field:s1:col1").attempts == 2
        assert job_store.get("field:s1:col1").status is JobStatus.DONE

    def test_retry_only_failed_subset(self, job_store, vector_store, limiter):
        jobs = add_field_jobs(job_store, ["ok", "FAIL once"])
        provider = FlakyEmbeddingProvider(failures=1)
        wf = workflow(FieldWorkflow, job_store, vector_store, provider, limiter)

        wf.run(jobs)

        assert provider.texts.count("ok") == 1

    def test_backoff_doubles(self, job_store, vector_store, limiter):
        jobs = add_field_jobs(job_store, ["FAIL"])
        sleeps = []
        wf = workflow(
            FieldWorkflow, job_store, vector_store, FlakyEmbeddingProvider(failures=100), limiter,
            backoff_base=1.0, sleep=sleeps.append,
        )

        wf.run(jobs)

        assert sleeps == [1.0, 2.0, 4.0]

    def test_empty_text_fails(self, job_store, vector_store, embedder, limiter):
        jobs = add_field_jobs(job_store, ["   "])
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter, max_retries=0)

        result = wf.run(jobs)

        assert result.errors == 1
        assert embedder.embed_calls == 0
        assert job_store.get("field:s1:col0").status is JobStatus.ERROR

    def test_concurrent_fan_out(self, job_store, vector_store, limiter):
        texts = [f"text number {i}" for i in range(10)] + ["FAIL a", "FAIL b"]
        jobs = add_field_jobs(job_store, texts)
        wf = workflow(
            FieldWorkflow, job_store, vector_store, FlakyEmbeddingProvider(failures=100), limiter,
            concurrency=4,
        )

        result = wf.run(jobs)

        assert result.processed == 10
        assert result.errors == 2
        assert vector_store.count() == 10

    def test_skips_jobs_no_longer_pending(self, job_store, vector_store, embedder, limiter):
        jobs = add_field_jobs(job_store, ["alpha", "beta"])
        job_store.mark_processing(jobs[0].id)
        job_store.mark_done(jobs[0].id)
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)

        result = wf.run(jobs)

        assert result.processed == 1
        assert embedder.texts == ["beta"]

    def test_vector_record_carries_job_metadata(self, job_store, vector_store, embedder, limiter):
        job_store.create_job(FieldJobRequest(
            session_id="s1", source_table="cycles", source_row_id="c1",
            column_name="review_distractions", text="Slack pings", cycle_id="c1",
            field_label="Any distractions?",
        ))
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)

        wf.run(job_store.list_pending())

        record = vector_store.records["field:c1:review_distractions"]
        assert record.session_id == "s1"
        assert record.cycle_id == "c1"
        assert record.column == "review_distractions"
        assert record.field_label == "Any distractions?"
        assert record.text == "Slack pings"

    def test_uses_rate_limiter(self, job_store, vector_store, embedder):
        from recall.rate_limiter import RateLimiter
        limiter = RateLimiter(max_calls=100, window_seconds=60)
        jobs = add_field_jobs(job_store, ["a", "b", "c"])
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)

        wf.run(jobs)

        assert limiter.available() == 97


class TestCycleWorkflow:

    def test_embeds_assembled_text(self, job_store, vector_store, embedder, limiter):
        job_store.create_job(CycleJobRequest(
            session_id="s1", cycle_id="c1", text="START: Goal: Outline. END: Status: hit",
        ))
        wf = workflow(CycleWorkflow, job_store, vector_store, embedder, limiter)

        result = wf.run_one(job_store.get("cycle:c1"))

        assert result.success
        assert vector_store.records["cycle:c1"].text == "START: Goal: Outline. END: Status: hit"
        assert vector_store.records["cycle:c1"].cycle_id == "c1"


class TestSessionWorkflow:
    """Summarize first, fall back to the raw snapshot."""

    def _session_job(self, job_store):
        snapshot = session_snapshot(make_session("s1"))
        job_store.create_job(SessionJobRequest(session_id="s1", text=snapshot))
        return job_store.get("session:s1"), snapshot

    def test_embeds_summary(self, job_store, vector_store, embedder, limiter):
        job, snapshot = self._session_job(job_store)
        summarizer = MockSummarizationProvider(summary="Drafted most of the report.")
        wf = workflow(SessionWorkflow, job_store, vector_store, embedder, limiter, summarization=summarizer)

        result = wf.run_one(job)

        assert result.success
        assert summarizer.calls == [snapshot]
        assert embedder.texts == ["Drafted most of the report."]
        assert vector_store.records["session:s1"].text == "Drafted most of the report."

    def test_summarizer_failure_falls_back(self, job_store, vector_store, embedder, limiter):
        job, snapshot = self._session_job(job_store)
        wf = workflow(
            SessionWorkflow, job_store, vector_store, embedder, limiter,
            summarization=FailingSummarizationProvider(),
        )

        result = wf.run_one(job)

        assert result.success
        assert vector_store.records["session:s1"].text == snapshot
        assert job_store.get("session:s1").status is JobStatus.DONE

    def test_empty_summary_falls_back(self, job_store, vector_store, embedder, limiter):
        job, snapshot = self._session_job(job_store)
        wf = workflow(
            SessionWorkflow, job_store, vector_store, embedder, limiter,
            summarization=MockSummarizationProvider(summary="   "),
        )

        wf.run_one(job)

        assert vector_store.records["session:s1"].text == snapshot


class TestStateMachine:

    def test_no_transition_from_terminal(self, job_store, vector_store, embedder, limiter):
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)
        with pytest.raises(ValueError):
            wf.transition(Step.COMPLETE, None)

    def test_empty_batch_completes(self, job_store, vector_store, embedder, limiter):
        wf = workflow(FieldWorkflow, job_store, vector_store, embedder, limiter)
        result = wf.run([])
        assert result.success
        assert result.processed == 0

    def test_workflow_per_level(self):
        assert {cls.name for cls in WORKFLOW_CLASSES.values()} == {"field", "cycle", "session"}
