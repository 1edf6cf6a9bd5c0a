"""Tests for snippets, context and metadata enrichment."""

from recall.enrichment import (
    ELLIPSIS,
    EnrichmentOptions,
    Enricher,
    field_importance_score,
    find_related,
    generate_query_snippet,
    generate_snippet,
    result_preview,
)
from recall.types import CycleStatus, Level

from tests.conftest import make_cycle, make_ranked, make_session


LONG_TEXT = (
    "Spent the morning on email and standup notes. " * 4
    + "The flaky integration tests kept failing on the billing service. "
    + "Afternoon went to code review and planning for next week. " * 3
)


class TestSnippets:

    def test_short_text_unchanged(self):
        assert generate_snippet("Short answer", "answer", 50) == "Short answer"

    def test_without_query_takes_start(self):
        snippet = generate_snippet(LONG_TEXT, "", 60)
        assert snippet.startswith("Spent the morning")
        assert snippet.endswith(ELLIPSIS)
        assert len(snippet) <= 60 + len(ELLIPSIS)

    def test_window_follows_query(self):
        snippet = generate_snippet(LONG_TEXT, "flaky integration", 80)
        assert snippet.startswith(ELLIPSIS)
        assert "flaky integration" in snippet

    def test_query_snippet_picks_relevant_sentence(self):
        snippet = generate_query_snippet(LONG_TEXT, "flaky tests billing", 80)
        assert "flaky integration tests" in snippet

    def test_query_snippet_without_query(self):
        snippet = generate_query_snippet(LONG_TEXT, "", 20)
        assert snippet == LONG_TEXT[:20] + ELLIPSIS


class TestHelpers:

    def test_field_importance_score(self):
        assert field_importance_score("plan_objective", None) == 1.0
        assert field_importance_score("plan_goal", None) == 0.8
        assert field_importance_score("review_noteworthy", "Anything noteworthy?") == 0.7
        assert field_importance_score("energy", None) == 0.6

    def test_find_related(self):
        target = make_ranked("field:s1:a", score=0.9, cycle_id="c1")
        results = [
            target,
            make_ranked("field:s1:b", score=0.8),
            make_ranked("field:s1:c", score=0.7),
            make_ranked("field:s1:d", score=0.6),
            make_ranked("field:s2:e", score=0.5, session_id="s2", cycle_id="c1"),
        ]
        related = find_related(target, results)
        assert [r.id for r in related] == ["field:s1:b", "field:s1:c", "field:s2:e"]


class TestEnricher:
    """Record-store backed enrichment."""

    def _store(self, record_store):
        record_store.add(make_session("s1"))
        record_store.add(make_cycle("c1", "s1", index=1, status=CycleStatus.HIT))
        record_store.add(make_cycle("c2", "s1", index=2, status=CycleStatus.MISS,
                                    plan_goal="Fix the tests"))
        return record_store

    def test_no_options_returns_same_list(self, record_store):
        results = [make_ranked()]
        assert Enricher(record_store).enrich(results) is results

    def test_context(self, record_store):
        enricher = Enricher(self._store(record_store))
        result = make_ranked("field:c2:review_distractions", cycle_id="c2",
                             column="review_distractions", field_label="Any distractions?")

        [enriched] = enricher.enrich([result], "tests", EnrichmentOptions(include_context=True))

        assert enriched.context.session["plan_objective"] == "Write the quarterly report draft"
        assert enriched.context.cycle["status"] == "miss"
        assert enriched.context.field_type == "review"
        assert enriched.context.field_importance == 0.7
        assert result.context is None

    def test_metadata_success_rate(self, record_store):
        enricher = Enricher(self._store(record_store))
        result = make_ranked("cycle:c2", level=Level.CYCLE, cycle_id="c2")

        [enriched] = enricher.enrich([result], "", EnrichmentOptions(include_metadata=True))

        assert enriched.metadata["total_cycles"] == 2
        assert enriched.metadata["success_rate"] == 50
        assert enriched.metadata["cycle_number"] == 2
        assert enriched.metadata["cycle_status"] == "miss"
        assert enriched.metadata["cycle_objective"] == "Fix the tests"
        assert enriched.metadata["session_completed"] is True

    def test_missing_records_leave_context_empty(self, record_store):
        [enriched] = Enricher(record_store).enrich(
            [make_ranked(session_id="gone")], "", EnrichmentOptions(include_context=True),
        )
        assert enriched.context.session is None

    def test_record_store_failure_is_contained(self):
        class Broken:
            def get_session(self, session_id):
                raise RuntimeError("database locked")

        [enriched] = Enricher(Broken()).enrich(
            [make_ranked()], "", EnrichmentOptions(include_metadata=True),
        )
        assert enriched.metadata == {"created_at": None}

    def test_order_preserved(self, record_store):
        results = [make_ranked("a", score=0.2), make_ranked("b", score=0.9)]
        enriched = Enricher(record_store).enrich(
            results, "", EnrichmentOptions(include_snippets=True, include_related=True),
        )
        assert [r.id for r in enriched] == ["a", "b"]
        assert [r.id for r in enriched[0].related] == ["b"]


class TestPreview:

    def test_field_preview(self):
        result = make_ranked("field:s1:plan_objective", score=0.75, field_label="What am I trying to accomplish?",
                             created_at="2026-01-10T09:00:00")
        preview = result_preview(result)
        assert preview["title"] == "What am I trying to accomplish?"
        assert preview["subtitle"] == "Field, 2026-01-10"
        assert preview["content"] == "Write the report"
        assert preview["metadata"] == ["score 0.75"]

    def test_session_preview_uses_metadata(self):
        result = make_ranked("session:s1", level=Level.SESSION)
        result.metadata = {
            "session_objective": "Ship it", "session_started_at": "2026-01-10T09:00:00",
            "success_rate": 50, "total_cycles": 2,
        }
        preview = result_preview(result)
        assert preview["title"] == "Ship it"
        assert preview["subtitle"] == "Session, 2026-01-10"
        assert "50% hit rate over 2 cycles" in preview["metadata"]
