"""
Data types for the embedding job pipeline and search results.

Timestamps are UTC strings in the canonical format YYYY-MM-DDTHH:MM:SS,
which sort lexically in time order (the job store relies on this).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utc_now() -> str:
    """Current UTC timestamp in canonical format."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def format_utc(dt: datetime) -> str:
    """Format a datetime as a canonical UTC timestamp."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as values carrying microseconds,
    'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def age_in_days(ts: str | None, now: datetime | None = None) -> float | None:
    """Age of a timestamp in (fractional) days, or None if unparseable."""
    if not ts:
        return None
    try:
        then = parse_utc_timestamp(ts)
    except (ValueError, TypeError):
        return None
    now = now or datetime.now(timezone.utc)
    return (now - then).total_seconds() / 86400.0


class Level(str, Enum):
    """Granularity of an embeddable unit of text."""
    FIELD = "field"
    CYCLE = "cycle"
    SESSION = "session"


# Processing priority: cheap field jobs first, they unlock the others sooner
LEVEL_PRIORITY = {Level.FIELD: 0, Level.CYCLE: 1, Level.SESSION: 2}


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class CycleStatus(str, Enum):
    """Outcome of a work cycle, as recorded in the cycle review."""
    HIT = "hit"
    MISS = "miss"
    PARTIAL = "partial"


# -----------------------------------------------------------------------------
# Deterministic ids
# -----------------------------------------------------------------------------

def field_job_id(row_id: str, column: str) -> str:
    return f"field:{row_id}:{column}"


def cycle_job_id(cycle_id: str) -> str:
    return f"cycle:{cycle_id}"


def session_job_id(session_id: str) -> str:
    return f"session:{session_id}"


# -----------------------------------------------------------------------------
# Job requests (one variant per level)
# -----------------------------------------------------------------------------

def _require(value: str | None, name: str, kind: str) -> None:
    if not value:
        raise ValueError(f"{kind} requires a non-empty {name}")


@dataclass(frozen=True)
class FieldJobRequest:
    """A single form answer on a session or cycle row."""
    level: ClassVar[Level] = Level.FIELD

    session_id: str
    source_table: str
    source_row_id: str
    column_name: str
    text: str
    field_label: str | None = None
    cycle_id: str | None = None

    def __post_init__(self):
        _require(self.session_id, "session_id", "field job")
        _require(self.source_row_id, "source_row_id", "field job")
        _require(self.column_name, "column_name", "field job")

    @property
    def job_id(self) -> str:
        return field_job_id(self.source_row_id, self.column_name)


@dataclass(frozen=True)
class CycleJobRequest:
    """One work cycle, text already assembled from plan and review."""
    level: ClassVar[Level] = Level.CYCLE

    session_id: str
    cycle_id: str
    text: str
    source_table: str = "cycles"

    def __post_init__(self):
        _require(self.session_id, "session_id", "cycle job")
        _require(self.cycle_id, "cycle_id", "cycle job")

    @property
    def source_row_id(self) -> str:
        return self.cycle_id

    @property
    def job_id(self) -> str:
        return cycle_job_id(self.cycle_id)


@dataclass(frozen=True)
class SessionJobRequest:
    """A whole session, text is the structured snapshot to summarize."""
    level: ClassVar[Level] = Level.SESSION

    session_id: str
    text: str
    source_table: str = "sessions"

    def __post_init__(self):
        _require(self.session_id, "session_id", "session job")

    @property
    def source_row_id(self) -> str:
        return self.session_id

    @property
    def job_id(self) -> str:
        return session_job_id(self.session_id)


JobRequest = Union[FieldJobRequest, CycleJobRequest, SessionJobRequest]


def job_request(
    level: Level | str,
    session_id: str,
    source_table: str,
    source_row_id: str,
    text: str,
    *,
    cycle_id: str | None = None,
    column_name: str | None = None,
    field_label: str | None = None,
) -> JobRequest:
    """Build the request variant matching `level` from flat arguments."""
    level = Level(level)
    if level is Level.FIELD:
        return FieldJobRequest(
            session_id=session_id,
            source_table=source_table,
            source_row_id=source_row_id,
            column_name=column_name or "",
            text=text,
            field_label=field_label,
            cycle_id=cycle_id,
        )
    if level is Level.CYCLE:
        return CycleJobRequest(
            session_id=session_id,
            cycle_id=cycle_id or source_row_id,
            text=text,
            source_table=source_table,
        )
    return SessionJobRequest(session_id=session_id, text=text, source_table=source_table)


# -----------------------------------------------------------------------------
# Stored job
# -----------------------------------------------------------------------------

@dataclass
class Job:
    """A unit of text awaiting (or done with) embedding."""
    id: str
    level: Level
    session_id: str
    source_table: str
    source_row_id: str
    text: str
    status: JobStatus = JobStatus.PENDING
    cycle_id: str | None = None
    column_name: str | None = None
    field_label: str | None = None
    error_message: str | None = None
    version: int = 1
    attempts: int = 0
    created_at: str = field(default_factory=utc_now)
    processed_at: str | None = None


# -----------------------------------------------------------------------------
# Vectors and search results
# -----------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """One embedded unit in the vector store. The id matches the job id."""
    id: str
    level: Level
    session_id: str
    vector: list[float]
    text: str
    cycle_id: str | None = None
    column: str | None = None
    field_label: str | None = None
    version: int = 1
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def from_job(cls, job: Job, vector: list[float], text: str | None = None) -> "VectorRecord":
        return cls(
            id=job.id,
            level=Level(job.level),
            session_id=job.session_id,
            vector=vector,
            text=job.text if text is None else text,
            cycle_id=job.cycle_id,
            column=job.column_name,
            field_label=job.field_label,
            version=job.version,
            created_at=job.created_at,
        )


@dataclass
class RawSearchResult:
    """A vector-store row returned by a nearest-neighbour query."""
    id: str
    level: Level
    session_id: str
    text: str
    distance: float
    cycle_id: str | None = None
    column: str | None = None
    field_label: str | None = None
    created_at: str | None = None

    @property
    def vector_score(self) -> float:
        """Similarity in [0, 1] derived from cosine distance."""
        return max(0.0, min(1.0, 1.0 - self.distance))


@dataclass
class ResultContext:
    """Record-store context attached to a result during enrichment."""
    session: dict[str, Any] | None = None
    cycle: dict[str, Any] | None = None
    field_type: str | None = None
    field_importance: float | None = None


@dataclass
class RankedResult:
    """A search hit after ranking, optionally enriched."""
    raw: RawSearchResult
    vector_score: float
    composite_score: float
    rank: int = 0
    snippet: str | None = None
    context: Optional[ResultContext] = None
    metadata: dict[str, Any] | None = None
    related: list["RankedResult"] = field(default_factory=list)

    # Convenience accessors onto the raw row
    @property
    def id(self) -> str:
        return self.raw.id

    @property
    def level(self) -> Level:
        return self.raw.level

    @property
    def session_id(self) -> str:
        return self.raw.session_id

    @property
    def cycle_id(self) -> str | None:
        return self.raw.cycle_id

    @property
    def text(self) -> str:
        return self.raw.text

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "level": self.level.value,
            "session_id": self.session_id,
            "cycle_id": self.cycle_id,
            "column": self.raw.column,
            "field_label": self.raw.field_label,
            "created_at": self.raw.created_at,
            "vector_score": round(self.vector_score, 4),
            "composite_score": round(self.composite_score, 4),
            "rank": self.rank,
            "text": self.text,
        }
        if self.snippet is not None:
            d["snippet"] = self.snippet
        if self.context is not None:
            d["context"] = {
                "session": self.context.session,
                "cycle": self.context.cycle,
                "field_type": self.context.field_type,
                "field_importance": self.context.field_importance,
            }
        if self.metadata is not None:
            d["metadata"] = self.metadata
        if self.related:
            d["related"] = [r.id for r in self.related]
        return d
