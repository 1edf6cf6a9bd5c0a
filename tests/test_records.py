"""Tests for record validation, text assembly and the SQLite record view."""

import json
import sqlite3

import pytest

from recall.errors import RecordValidationError
from recall.providers.base import build_session_summary_prompt
from recall.providers.llm import PassthroughSummarization
from recall.records import (
    CycleRecord,
    SQLiteRecordStore,
    SessionRecord,
    cycle_text,
    session_snapshot,
)
from recall.types import CycleStatus

from tests.conftest import make_cycle, make_session


class TestSessionRecord:

    def test_from_row(self):
        session = SessionRecord.from_row({
            "id": "s1", "work_minutes": "25", "completed": 1,
            "plan_objective": "  Ship it  ", "review_obstacles": "   ",
        })
        assert session.work_minutes == 25
        assert session.completed is True
        assert session.plan_objective == "Ship it"
        assert session.review_obstacles is None
        assert not session.has_review()

    def test_missing_id(self):
        with pytest.raises(RecordValidationError):
            SessionRecord.from_row({"plan_objective": "x"})

    def test_bad_integer(self):
        with pytest.raises(RecordValidationError):
            SessionRecord.from_row({"id": "s1", "work_minutes": "twenty"})

    def test_plan_and_review_fields(self):
        session = make_session(review_takeaways="Start earlier")
        assert set(session.plan_fields()) == {"plan_objective", "plan_importance"}
        assert session.review_fields() == {"review_takeaways": "Start earlier"}
        assert session.has_review()


class TestCycleRecord:

    def test_energy_and_status_from_integers(self):
        cycle = CycleRecord.from_row({
            "id": "c1", "session_id": "s1", "idx": 3,
            "plan_energy": 0, "plan_morale": "2", "review_status": 2,
        })
        assert cycle.index == 3
        assert cycle.energy == "Low"
        assert cycle.morale == "High"
        assert cycle.status is CycleStatus.HIT

    def test_energy_and_status_from_strings(self):
        cycle = CycleRecord.from_row({
            "id": "c1", "session_id": "s1", "energy": "medium", "status": "Partial",
        })
        assert cycle.energy == "Medium"
        assert cycle.status is CycleStatus.PARTIAL

    @pytest.mark.parametrize("row", [
        {"id": "c1"},
        {"session_id": "s1"},
        {"id": "c1", "session_id": "s1", "plan_energy": 7},
        {"id": "c1", "session_id": "s1", "review_status": "won"},
    ])
    def test_invalid_rows(self, row):
        with pytest.raises(RecordValidationError):
            CycleRecord.from_row(row)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            CycleRecord.from_row({"id": "c1"})

    def test_to_dict_flattens_status(self):
        assert make_cycle(status=CycleStatus.MISS).to_dict()["status"] == "miss"


class TestTextAssembly:

    def test_cycle_text(self):
        cycle = make_cycle(
            plan_first_step="Open the doc", energy="High",
            status=CycleStatus.HIT, review_noteworthy="Flow state",
        )
        assert cycle_text(cycle) == (
            "START: Goal: Outline the report sections. First step: Open the doc. "
            "Energy: High. END: Status: hit. Noteworthy: Flow state"
        )

    def test_empty_cycle_text(self):
        assert cycle_text(CycleRecord(id="c1", session_id="s1")) == "START: . END: "

    def test_session_snapshot(self):
        data = json.loads(session_snapshot(make_session(review_takeaways="Start earlier")))
        assert data["intentions"]["objective"] == "Write the quarterly report draft"
        assert data["intentions"]["hazards"] is None
        assert data["review"]["takeaways"] == "Start earlier"
        assert data["stats"] == {"cycles_planned": 4, "cycles_completed": 3, "work_minutes": 25}


class TestSummaryPrompt:

    def test_missing_answers_are_na(self):
        prompt = build_session_summary_prompt(session_snapshot(make_session()))
        assert "- Objective: Write the quarterly report draft" in prompt
        assert "- Hazards: N/A" in prompt
        assert "- Obstacles: N/A" in prompt

    def test_stats_line(self):
        prompt = build_session_summary_prompt(session_snapshot(make_session()))
        assert prompt.endswith("Stats: 3/4 cycles completed; Worked for 75 minutes total")

    def test_plain_text_passes_through(self):
        assert build_session_summary_prompt("not json").endswith("\n\nnot json")

    def test_passthrough_summarizer(self):
        summary = PassthroughSummarization(max_chars=60).summarize(session_snapshot(make_session()))
        assert summary.startswith("Intentions:")
        assert summary.endswith("...")
        assert len(summary) <= 63


@pytest.fixture
def records_db(tmp_path):
    path = tmp_path / "app.db"
    conn = sqlite3.connect(path)
    conn.executescript("""
        CREATE TABLE sessions (
            id TEXT PRIMARY KEY, started_at TEXT, work_minutes INTEGER,
            break_minutes INTEGER, cycles_planned INTEGER, completed INTEGER,
            plan_objective TEXT, plan_importance TEXT, plan_done_definition TEXT,
            plan_hazards TEXT, plan_misc_notes TEXT, review_accomplishments TEXT,
            review_comparison TEXT, review_obstacles TEXT, review_successes TEXT,
            review_takeaways TEXT
        );
        CREATE TABLE cycles (
            id TEXT PRIMARY KEY, session_id TEXT, idx INTEGER, plan_goal TEXT,
            plan_first_step TEXT, plan_hazards_cycle TEXT, plan_energy INTEGER,
            plan_morale INTEGER, review_status INTEGER, review_noteworthy TEXT,
            review_distractions TEXT, review_improvement TEXT,
            started_at TEXT, ended_at TEXT
        );
        INSERT INTO sessions (id, started_at, work_minutes, cycles_planned, completed, plan_objective)
        VALUES ('s1', '2026-01-10T09:00:00', 25, 2, 1, 'Write the report'),
               ('s2', '2026-01-11T09:00:00', 25, 2, 1, 'Plan the offsite'),
               ('s3', '2026-01-12T09:00:00', 25, 2, 0, 'Still going');
        INSERT INTO cycles (id, session_id, idx, plan_goal, plan_energy, review_status, started_at, ended_at)
        VALUES ('c1', 's1', 1, 'Outline', 1, 2, '2026-01-10T09:00:00', '2026-01-10T09:25:00'),
               ('c2', 's1', 2, 'Draft', 2, 0, '2026-01-10T09:30:00', '2026-01-10T09:55:00'),
               ('c3', 's1', 3, 'Broken', 1, 9, '2026-01-10T10:00:00', NULL);
    """)
    conn.commit()
    conn.close()
    return path


class TestSQLiteRecordStore:
    """Read-only view of the application database."""

    def test_get_session_counts_ended_cycles(self, records_db):
        store = SQLiteRecordStore(records_db)
        try:
            session = store.get_session("s1")
            assert session.plan_objective == "Write the report"
            assert session.cycles_completed == 2
            assert store.get_session("missing") is None
        finally:
            store.close()

    def test_recent_completed_sessions(self, records_db):
        store = SQLiteRecordStore(records_db)
        try:
            assert [s.id for s in store.recent_completed_sessions(10)] == ["s2", "s1"]
            assert [s.id for s in store.recent_completed_sessions(1)] == ["s2"]
        finally:
            store.close()

    def test_invalid_cycle_rows_skipped(self, records_db):
        store = SQLiteRecordStore(records_db)
        try:
            cycles = store.list_cycles("s1")
            assert [c.id for c in cycles] == ["c1", "c2"]
            assert cycles[0].status is CycleStatus.HIT
            assert cycles[1].energy == "High"
            assert store.get_cycle("c3") is None
        finally:
            store.close()

    def test_recent_ended_cycles(self, records_db):
        store = SQLiteRecordStore(records_db)
        try:
            assert [c.id for c in store.recent_ended_cycles(10)] == ["c2", "c1"]
        finally:
            store.close()

    def test_read_only(self, records_db):
        store = SQLiteRecordStore(records_db)
        try:
            with pytest.raises(sqlite3.OperationalError):
                store._conn.execute("DELETE FROM sessions")
        finally:
            store.close()

    def test_missing_database(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SQLiteRecordStore(tmp_path / "nope.db")
