"""
Boundary to the application's record store (sessions and cycles).

Rows coming from the record store are validated into `SessionRecord` and
`CycleRecord` here; everything downstream (job creation, enrichment) works
with those typed records instead of raw rows.

`SQLiteRecordStore` reads the application's SQLite database directly
(read-only). Any other store can be used by implementing `RecordStore`.
"""

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from .errors import RecordValidationError
from .fields import (
    CYCLE_PLAN_FIELDS,
    CYCLE_REVIEW_FIELDS,
    SESSION_PLAN_FIELDS,
    SESSION_REVIEW_FIELDS,
)
from .types import CycleStatus

logger = logging.getLogger(__name__)

ENERGY_LEVELS = ("Low", "Medium", "High")
# Stored as integers by the application, in this order
CYCLE_STATUS_ORDER = (CycleStatus.MISS, CycleStatus.PARTIAL, CycleStatus.HIT)


def _text(row: Mapping[str, Any], key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int(row: Mapping[str, Any], key: str) -> int | None:
    value = row.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"{key} must be an integer, got {value!r}")


def _energy(value: Any, key: str) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        index = int(value)
        if 0 <= index < len(ENERGY_LEVELS):
            return ENERGY_LEVELS[index]
    elif isinstance(value, str) and value.capitalize() in ENERGY_LEVELS:
        return value.capitalize()
    raise RecordValidationError(f"{key} must be Low/Medium/High, got {value!r}")


def _cycle_status(value: Any) -> CycleStatus | None:
    if value is None or value == "":
        return None
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        index = int(value)
        if 0 <= index < len(CYCLE_STATUS_ORDER):
            return CYCLE_STATUS_ORDER[index]
    else:
        try:
            return CycleStatus(str(value).lower())
        except ValueError:
            pass
    raise RecordValidationError(f"cycle status must be hit/miss/partial, got {value!r}")


@dataclass(frozen=True)
class SessionRecord:
    """One work session: intentions up front, review at the end."""
    id: str
    started_at: str | None = None
    work_minutes: int | None = None
    break_minutes: int | None = None
    cycles_planned: int | None = None
    cycles_completed: int | None = None
    completed: bool = False
    plan_objective: str | None = None
    plan_importance: str | None = None
    plan_done_definition: str | None = None
    plan_hazards: str | None = None
    plan_misc_notes: str | None = None
    review_accomplishments: str | None = None
    review_comparison: str | None = None
    review_obstacles: str | None = None
    review_successes: str | None = None
    review_takeaways: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SessionRecord":
        session_id = _text(row, "id")
        if not session_id:
            raise RecordValidationError("session row has no id")
        return cls(
            id=session_id,
            started_at=_text(row, "started_at"),
            work_minutes=_int(row, "work_minutes"),
            break_minutes=_int(row, "break_minutes"),
            cycles_planned=_int(row, "cycles_planned"),
            cycles_completed=_int(row, "cycles_completed"),
            completed=bool(row.get("completed") or False),
            **{col: _text(row, col) for col in (*SESSION_PLAN_FIELDS, *SESSION_REVIEW_FIELDS)},
        )

    def plan_fields(self) -> dict[str, str]:
        """Non-empty planning answers by column."""
        return {c: getattr(self, c) for c in SESSION_PLAN_FIELDS if getattr(self, c)}

    def review_fields(self) -> dict[str, str]:
        return {c: getattr(self, c) for c in SESSION_REVIEW_FIELDS if getattr(self, c)}

    def has_review(self) -> bool:
        return bool(self.review_fields())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CycleRecord:
    """One work cycle inside a session."""
    id: str
    session_id: str
    index: int | None = None
    plan_goal: str | None = None
    plan_first_step: str | None = None
    plan_hazards_cycle: str | None = None
    energy: str | None = None
    morale: str | None = None
    status: CycleStatus | None = None
    review_noteworthy: str | None = None
    review_distractions: str | None = None
    review_improvement: str | None = None
    started_at: str | None = None
    ended_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CycleRecord":
        cycle_id = _text(row, "id")
        session_id = _text(row, "session_id")
        if not cycle_id:
            raise RecordValidationError("cycle row has no id")
        if not session_id:
            raise RecordValidationError(f"cycle {cycle_id} has no session_id")
        return cls(
            id=cycle_id,
            session_id=session_id,
            index=_int(row, "idx") if "idx" in row else _int(row, "index"),
            energy=_energy(row.get("plan_energy", row.get("energy")), "energy"),
            morale=_energy(row.get("plan_morale", row.get("morale")), "morale"),
            status=_cycle_status(row.get("review_status", row.get("status"))),
            started_at=_text(row, "started_at"),
            ended_at=_text(row, "ended_at"),
            **{col: _text(row, col) for col in (*CYCLE_PLAN_FIELDS, *CYCLE_REVIEW_FIELDS)},
        )

    def plan_fields(self) -> dict[str, str]:
        return {c: getattr(self, c) for c in CYCLE_PLAN_FIELDS if getattr(self, c)}

    def review_fields(self) -> dict[str, str]:
        return {c: getattr(self, c) for c in CYCLE_REVIEW_FIELDS if getattr(self, c)}

    def has_review(self) -> bool:
        return bool(self.review_fields())

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value if self.status else None
        return d


# -----------------------------------------------------------------------------
# Text assembly for cycle and session jobs
# -----------------------------------------------------------------------------

def cycle_text(cycle: CycleRecord) -> str:
    """`START: <plan parts>. END: <review parts>`, absent parts omitted."""
    plan = [
        cycle.plan_goal and f"Goal: {cycle.plan_goal}",
        cycle.plan_first_step and f"First step: {cycle.plan_first_step}",
        cycle.plan_hazards_cycle and f"Hazards: {cycle.plan_hazards_cycle}",
        cycle.energy and f"Energy: {cycle.energy}",
        cycle.morale and f"Morale: {cycle.morale}",
    ]
    review = [
        cycle.status and f"Status: {cycle.status.value}",
        cycle.review_noteworthy and f"Noteworthy: {cycle.review_noteworthy}",
        cycle.review_distractions and f"Distractions: {cycle.review_distractions}",
        cycle.review_improvement and f"Improvement: {cycle.review_improvement}",
    ]
    plan_text = ". ".join(p for p in plan if p)
    review_text = ". ".join(r for r in review if r)
    return f"START: {plan_text}. END: {review_text}"


def session_snapshot(session: SessionRecord) -> str:
    """Structured JSON snapshot of a session, input to summarization."""
    return json.dumps({
        "intentions": {
            "objective": session.plan_objective,
            "importance": session.plan_importance,
            "definition_of_done": session.plan_done_definition,
            "hazards": session.plan_hazards,
            "misc_notes": session.plan_misc_notes,
        },
        "review": {
            "accomplishments": session.review_accomplishments,
            "comparison": session.review_comparison,
            "obstacles": session.review_obstacles,
            "successes": session.review_successes,
            "takeaways": session.review_takeaways,
        },
        "stats": {
            "cycles_planned": session.cycles_planned,
            "cycles_completed": session.cycles_completed,
            "work_minutes": session.work_minutes,
        },
    })


# -----------------------------------------------------------------------------
# Record store
# -----------------------------------------------------------------------------

@runtime_checkable
class RecordStore(Protocol):
    """Read accessors onto the application's sessions and cycles."""

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        ...

    def get_cycle(self, cycle_id: str) -> Optional[CycleRecord]:
        ...

    def list_cycles(self, session_id: str) -> list[CycleRecord]:
        ...

    def recent_completed_sessions(self, limit: int) -> list[SessionRecord]:
        """Completed sessions, most recently started first."""
        ...

    def recent_ended_cycles(self, limit: int) -> list[CycleRecord]:
        """Cycles with an end time, most recently started first."""
        ...


class SQLiteRecordStore:
    """
    Read-only view of the application's `sessions` and `cycles` tables.

    Rows that fail validation are logged and skipped in list operations.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        if not self._db_path.exists():
            raise FileNotFoundError(f"Record database not found: {self._db_path}")
        self._conn = sqlite3.connect(
            f"file:{self._db_path}?mode=ro", uri=True, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=5000")

    _SESSION_SELECT = """
        SELECT s.*,
               (SELECT COUNT(*) FROM cycles c
                WHERE c.session_id = s.id AND c.ended_at IS NOT NULL) AS cycles_completed
        FROM sessions s
    """

    def _sessions(self, sql: str, params: tuple) -> list[SessionRecord]:
        records = []
        for row in self._conn.execute(sql, params).fetchall():
            try:
                records.append(SessionRecord.from_row(dict(row)))
            except RecordValidationError as e:
                logger.warning("Skipping invalid session row: %s", e)
        return records

    def _cycles(self, sql: str, params: tuple) -> list[CycleRecord]:
        records = []
        for row in self._conn.execute(sql, params).fetchall():
            try:
                records.append(CycleRecord.from_row(dict(row)))
            except RecordValidationError as e:
                logger.warning("Skipping invalid cycle row: %s", e)
        return records

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        found = self._sessions(self._SESSION_SELECT + " WHERE s.id = ?", (session_id,))
        return found[0] if found else None

    def get_cycle(self, cycle_id: str) -> Optional[CycleRecord]:
        found = self._cycles("SELECT * FROM cycles WHERE id = ?", (cycle_id,))
        return found[0] if found else None

    def list_cycles(self, session_id: str) -> list[CycleRecord]:
        return self._cycles(
            "SELECT * FROM cycles WHERE session_id = ? ORDER BY idx ASC", (session_id,)
        )

    def recent_completed_sessions(self, limit: int) -> list[SessionRecord]:
        return self._sessions(
            self._SESSION_SELECT + " WHERE s.completed = 1 ORDER BY s.started_at DESC LIMIT ?",
            (limit,),
        )

    def recent_ended_cycles(self, limit: int) -> list[CycleRecord]:
        return self._cycles(
            "SELECT * FROM cycles WHERE ended_at IS NOT NULL ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )

    def close(self) -> None:
        self._conn.close()
