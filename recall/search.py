"""
Search over embedded sessions, cycles and fields.

Two entry points:

* `cascading_search()` tries one level at a time in an order chosen from
  the user's intent and returns the first level with any hits, de-duplicated
  so each session (or cycle) appears once.
* `search()` runs the full pipeline: vector query, filters, composite
  ranking, deduplication, optional enrichment, final limit.
"""

import logging
import re
import threading
from collections import Counter, deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from .dedup import DEFAULT_DEDUPLICATION_CONFIG, DeduplicationConfig, Deduplicator
from .enrichment import DEFAULT_SNIPPET_LENGTH, EnrichmentOptions, Enricher
from .ranking import DEFAULT_RANKING_CONFIG, RankingConfig, adjust_for_context, diversity_adjust, rank, renumber
from .records import RecordStore
from .types import CycleStatus, Level, RankedResult, RawSearchResult, parse_utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_CASCADE_K = 8
HISTORY_SIZE = 100

COARSE_INTENT = re.compile(r"overall|trend|summary", re.IGNORECASE)
FINE_FIRST = (Level.FIELD, Level.CYCLE, Level.SESSION)
COARSE_FIRST = (Level.SESSION, Level.CYCLE, Level.FIELD)

CONTENT_TYPE_WORDS = {
    "planning": ("objective", "plan", "intention"),
    "review": ("review", "reflection", "outcome"),
    "notes": ("note", "comment"),
}


def level_priority(intent: str | None) -> tuple[Level, ...]:
    """Coarse-first for overview questions, fine-first otherwise."""
    if intent and COARSE_INTENT.search(intent):
        return COARSE_FIRST
    return FINE_FIRST


def dedupe_by_owner(results: list[RawSearchResult], level: Level) -> list[RawSearchResult]:
    """Keep the first hit per session (session level) or per cycle (other levels)."""
    seen: set[str] = set()
    kept = []
    for r in results:
        if level is Level.SESSION:
            key = r.session_id
        else:
            key = r.cycle_id or r.session_id
        if key in seen:
            continue
        seen.add(key)
        kept.append(r)
    return kept


@dataclass(frozen=True)
class SearchFilters:
    levels: tuple[Level, ...] | None = None
    session_id: str | None = None
    cycle_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    min_score: float | None = None
    content_type: str | None = None  # planning | review | notes
    cycle_status: CycleStatus | None = None

    def __post_init__(self):
        if self.levels is not None:
            object.__setattr__(self, "levels", tuple(Level(lv) for lv in self.levels))
        if self.content_type is not None and self.content_type not in CONTENT_TYPE_WORDS:
            raise ValueError(f"Unknown content type: {self.content_type}")

    def vector_filters(self) -> dict:
        """The equality filters the vector store can apply itself."""
        filters = {}
        if self.levels and len(self.levels) == 1:
            filters["level"] = self.levels[0]
        if self.session_id:
            filters["session_id"] = self.session_id
        if self.cycle_id:
            filters["cycle_id"] = self.cycle_id
        return filters


@dataclass(frozen=True)
class SearchOptions:
    limit: int = DEFAULT_LIMIT
    filters: SearchFilters | None = None
    intent: str | None = None
    ranking: RankingConfig = DEFAULT_RANKING_CONFIG
    deduplication: DeduplicationConfig = DEFAULT_DEDUPLICATION_CONFIG
    include_context: bool = False
    include_snippets: bool = False
    include_metadata: bool = False
    include_related: bool = False
    snippet_length: int = DEFAULT_SNIPPET_LENGTH
    search_type: str | None = None  # exploratory | specific | recent
    diversity: bool = False

    @property
    def enrichment(self) -> EnrichmentOptions:
        return EnrichmentOptions(
            include_context=self.include_context,
            include_snippets=self.include_snippets,
            include_metadata=self.include_metadata,
            include_related=self.include_related,
            snippet_length=self.snippet_length,
        )


@dataclass
class SearchGroup:
    kind: str
    key: str
    label: str
    results: list[RankedResult]

    @property
    def score(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.composite_score for r in self.results) / len(self.results)

    @property
    def total(self) -> int:
        return len(self.results)


@dataclass
class _HistoryEntry:
    query: str
    timestamp: datetime
    result_count: int
    intent: str | None = None
    levels: tuple[str, ...] = ()


class SearchEngine:
    """
    Query-side pipeline over a vector store.

    Args:
        vector_store: VectorStore to query
        embed: text -> vector, normally the current embedding provider
        rate_limiter: Acquired before every embedding call
        record_store: Used for enrichment and cycle-status filtering
    """

    def __init__(
        self,
        vector_store,
        embed: Callable[[str], list[float]],
        rate_limiter=None,
        record_store: Optional[RecordStore] = None,
    ):
        self.vector_store = vector_store
        self._embed_fn = embed
        self.rate_limiter = rate_limiter
        self.record_store = record_store
        self.enricher = Enricher(record_store)
        self._history: deque[_HistoryEntry] = deque(maxlen=HISTORY_SIZE)
        self._history_lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        if self.rate_limiter is not None:
            self.rate_limiter.wait_for_slot()
        return self._embed_fn(text)

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    def cascading_search(
        self, query: str, intent: str | None = None, k: int = DEFAULT_CASCADE_K,
    ) -> list[RawSearchResult]:
        """
        Query levels in priority order and return the first non-empty level.

        The query is embedded once. Each level's hits are de-duplicated by
        session (session level) or cycle (cycle and field levels).
        """
        if not query.strip():
            return []
        vector = self.embed(query)
        for level in level_priority(intent):
            hits = self.vector_store.query(vector, {"level": level}, k)
            hits = dedupe_by_owner(hits, level)
            logger.debug("Cascade level %s: %d hits", level.value, len(hits))
            if hits:
                return hits
        return []

    def ranked_cascading_search(
        self,
        query: str,
        intent: str | None = None,
        k: int = DEFAULT_CASCADE_K,
        options: SearchOptions = SearchOptions(),
        good_score: float = 0.6,
    ) -> list[RankedResult]:
        """
        Cascade using the full pipeline per level.

        A level is accepted when it has enough strong results (composite
        above `good_score`, at least min(k/2, 3) of them); otherwise all
        levels are searched together.
        """
        if not query.strip():
            return []
        base = options.filters or SearchFilters()
        needed = min(k / 2, 3)
        vector = self.embed(query)
        for level in level_priority(intent):
            level_options = replace(
                options, filters=replace(base, levels=(level,)), limit=k, intent=intent,
            )
            results = self._pipeline(query, vector, level_options)
            if sum(1 for r in results if r.composite_score > good_score) >= needed:
                break
        else:
            results = self._pipeline(query, vector, replace(options, limit=k, intent=intent))
        self._record(query, results, intent)
        return results

    # -------------------------------------------------------------------------
    # Full pipeline
    # -------------------------------------------------------------------------

    def search(
        self,
        query: str,
        options: SearchOptions = SearchOptions(),
        intent: str | None = None,
    ) -> list[RankedResult]:
        if not query.strip():
            return []
        final = self._pipeline(query, self.embed(query), options)
        self._record(query, final, intent or options.intent)
        return final

    def _pipeline(
        self, query: str, vector: list[float], options: SearchOptions,
    ) -> list[RankedResult]:
        """Query, filter, rank, deduplicate, truncate and enrich."""
        filters = options.filters or SearchFilters()
        raw = self.vector_store.query(vector, filters.vector_filters(), options.limit * 2)
        raw = self.apply_filters(raw, filters)

        ranked = rank(raw, query, options.ranking)
        if options.search_type:
            ranked = adjust_for_context(ranked, options.search_type)
        if options.diversity:
            ranked = diversity_adjust(ranked)

        deduped = Deduplicator(self.embed).deduplicate(ranked, options.deduplication)
        final = renumber(deduped[:options.limit])
        final = self.enricher.enrich(final, query, options.enrichment)
        logger.debug("Search %r: %d raw, %d final", query, len(raw), len(final))
        return final

    def apply_filters(self, results: list[RawSearchResult], filters: SearchFilters) -> list[RawSearchResult]:
        """Filters the vector store cannot express."""
        filtered = results
        if filters.levels:
            filtered = [r for r in filtered if r.level in filters.levels]
        if filters.date_from or filters.date_to:
            filtered = [r for r in filtered if _in_range(r.created_at, filters.date_from, filters.date_to)]
        if filters.min_score is not None:
            filtered = [r for r in filtered if r.vector_score >= filters.min_score]
        if filters.content_type:
            words = CONTENT_TYPE_WORDS[filters.content_type]
            filtered = [
                r for r in filtered
                if any(w in f"{r.column or ''} {r.field_label or ''}".lower() for w in words)
            ]
        if filters.cycle_status is not None:
            filtered = self._filter_cycle_status(filtered, CycleStatus(filters.cycle_status))
        return filtered

    def _filter_cycle_status(self, results: list[RawSearchResult], status: CycleStatus) -> list[RawSearchResult]:
        if self.record_store is None:
            logger.warning("Cycle status filter needs a record store; ignoring it")
            return results
        statuses: dict[str, CycleStatus | None] = {}
        kept = []
        for r in results:
            if not r.cycle_id:
                continue
            if r.cycle_id not in statuses:
                cycle = self.record_store.get_cycle(r.cycle_id)
                statuses[r.cycle_id] = cycle.status if cycle else None
            if statuses[r.cycle_id] is status:
                kept.append(r)
        return kept

    # -------------------------------------------------------------------------
    # Grouping, history
    # -------------------------------------------------------------------------

    def grouped_search(
        self, query: str, by: str = "session", options: SearchOptions = SearchOptions(),
    ) -> list[SearchGroup]:
        results = self.search(query, options)
        if by not in ("session", "cycle"):
            return [SearchGroup("mixed", "all", "All results", results)]
        groups: dict[str, list[RankedResult]] = {}
        for r in results:
            key = r.session_id if by == "session" else (r.cycle_id or r.session_id)
            groups.setdefault(key, []).append(r)
        return [
            SearchGroup(
                kind=by,
                key=key,
                label=f"{'Cycle' if by == 'cycle' and members[0].cycle_id else 'Session'} {key[:8]}",
                results=members,
            )
            for key, members in groups.items()
        ]

    def _record(self, query: str, results: list[RankedResult], intent: str | None) -> None:
        entry = _HistoryEntry(
            query, datetime.now(timezone.utc), len(results), intent,
            tuple(Level(r.level).value for r in results),
        )
        with self._history_lock:
            self._history.append(entry)

    def suggestions(self, partial: str, limit: int = 5) -> list[str]:
        """Recent distinct queries containing `partial`, newest first."""
        partial = partial.lower()
        seen: list[str] = []
        with self._history_lock:
            entries = list(self._history)
        for entry in reversed(entries):
            if partial in entry.query.lower() and entry.query not in seen:
                seen.append(entry.query)
                if len(seen) >= limit:
                    break
        return seen

    def analytics(self) -> dict:
        with self._history_lock:
            entries = list(self._history)
        now = datetime.now(timezone.utc)
        total = len(entries)
        return {
            "total_searches": total,
            "recent_searches": sum(1 for e in entries if (now - e.timestamp).total_seconds() < 86400),
            "avg_results_per_search": sum(e.result_count for e in entries) / total if total else 0.0,
            "common_queries": [q for q, _ in Counter(e.query.lower() for e in entries).most_common(5)],
            "level_distribution": dict(Counter(lv for e in entries for lv in e.levels)),
        }


def _in_range(created_at: str | None, start: datetime | None, end: datetime | None) -> bool:
    if not created_at:
        return False
    try:
        created = parse_utc_timestamp(created_at)
    except ValueError:
        return False
    if start is not None and created < _aware(start):
        return False
    if end is not None and created > _aware(end):
        return False
    return True


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
