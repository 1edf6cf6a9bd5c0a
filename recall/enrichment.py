"""
Enrichment of ranked search results.

Adds display material to results without changing their order: snippets,
record-store context (session and cycle), derived metadata (cycle count,
success rate), and links to related results from the same session or
cycle.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Optional

from .fields import field_type
from .ranking import position_boost, text_relevance
from .records import RecordStore
from .types import CycleStatus, Level, RankedResult, ResultContext

logger = logging.getLogger(__name__)

DEFAULT_SNIPPET_LENGTH = 200
ELLIPSIS = "..."


@dataclass(frozen=True)
class EnrichmentOptions:
    include_context: bool = False
    include_snippets: bool = False
    include_metadata: bool = False
    include_related: bool = False
    snippet_length: int = DEFAULT_SNIPPET_LENGTH

    @property
    def any(self) -> bool:
        return (self.include_context or self.include_snippets
                or self.include_metadata or self.include_related)


# -----------------------------------------------------------------------------
# Snippets
# -----------------------------------------------------------------------------

def _window_score(window: str, terms: list[str], max_length: int) -> float:
    score = 0.0
    for term in terms:
        index = window.find(term)
        if index != -1:
            score += 1 + (max_length - index) / max_length
    return score


def generate_snippet(text: str, query: str = "", max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """
    Best window of at most `max_length` characters.

    Without a query the snippet is the start of the text. With one, the
    window containing the most query terms (earliest wins ties) is chosen.
    Cut ends snap back to a word boundary when one is near and are marked
    with an ellipsis.
    """
    if len(text) <= max_length:
        return text
    terms = [t for t in query.lower().split() if t]

    best_position = 0
    if terms:
        text_lower = text.lower()
        best_score = 0.0
        for i in range(len(text) - max_length + 1):
            score = _window_score(text_lower[i:i + max_length], terms, max_length)
            if score > best_score:
                best_score = score
                best_position = i

    snippet = text[best_position:best_position + max_length]
    if best_position + max_length < len(text):
        last_space = snippet.rfind(" ")
        if last_space > max_length * 0.8:
            snippet = snippet[:last_space]
        snippet += ELLIPSIS
    if best_position > 0:
        snippet = ELLIPSIS + snippet
    return snippet


_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def generate_query_snippet(text: str, query: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Snippet built from the sentences most relevant to the query."""
    if not query or len(text) <= max_length:
        return text if len(text) <= max_length else text[:max_length] + ELLIPSIS

    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]
    scored = sorted(
        sentences,
        key=lambda s: (text_relevance(s, query) + position_boost(s, query)
                       + min(len(s) / 100, 1.0) * 0.1),
        reverse=True,
    )
    parts: list[str] = []
    length = 0
    for sentence in scored:
        added = len(sentence) + (2 if parts else 0)
        if length + added > max_length:
            break
        parts.append(sentence)
        length += added
    if parts:
        return ". ".join(parts)
    if scored:
        return scored[0][:max_length - len(ELLIPSIS)] + ELLIPSIS
    return text[:max_length - len(ELLIPSIS)] + ELLIPSIS


# -----------------------------------------------------------------------------
# Context and metadata
# -----------------------------------------------------------------------------

def field_importance_score(column: str | None, label: str | None) -> float:
    combined = f"{column or ''} {label or ''}".lower()
    if "objective" in combined:
        return 1.0
    if "main" in combined or "primary" in combined:
        return 0.9
    if "plan" in combined or "intention" in combined:
        return 0.8
    if "review" in combined or "outcome" in combined:
        return 0.7
    if "additional" in combined or "other" in combined:
        return 0.5
    return 0.6


def find_related(result: RankedResult, results: list[RankedResult]) -> list[RankedResult]:
    """Top 2 other hits from the same session plus the top hit from the same cycle."""
    by_score = sorted(
        (r for r in results if r.id != result.id),
        key=lambda r: r.composite_score, reverse=True,
    )
    related = [r for r in by_score if r.session_id == result.session_id][:2]
    if result.cycle_id:
        seen = {r.id for r in related}
        for r in by_score:
            if r.cycle_id == result.cycle_id and r.id not in seen:
                related.append(r)
                break
    return related


class Enricher:
    """
    Attaches snippets, context, metadata and related results.

    Record-store failures are logged and leave the affected part empty.
    """

    def __init__(self, record_store: Optional[RecordStore] = None):
        self.record_store = record_store

    def enrich(
        self,
        results: list[RankedResult],
        query: str = "",
        options: EnrichmentOptions = EnrichmentOptions(),
    ) -> list[RankedResult]:
        if not options.any:
            return results
        sessions: dict[str, Any] = {}
        enriched = []
        for result in results:
            updates: dict[str, Any] = {}
            if options.include_snippets:
                updates["snippet"] = generate_snippet(result.text, query, options.snippet_length)
            if options.include_context:
                updates["context"] = self.context(result, sessions)
            if options.include_metadata:
                updates["metadata"] = self.metadata(result, sessions)
            if options.include_related:
                updates["related"] = find_related(result, results)
            enriched.append(replace(result, **updates))
        return enriched

    def _session(self, session_id: str, cache: dict[str, Any]):
        """(session, cycles) from the record store, cached per call."""
        if session_id not in cache:
            session, cycles = None, []
            if self.record_store is not None:
                try:
                    session = self.record_store.get_session(session_id)
                    cycles = self.record_store.list_cycles(session_id) if session else []
                except Exception as e:
                    logger.warning("Could not load session %s for enrichment: %s", session_id, e)
            cache[session_id] = (session, cycles)
        return cache[session_id]

    def context(self, result: RankedResult, cache: dict[str, Any]) -> ResultContext:
        session, cycles = self._session(result.session_id, cache)
        context = ResultContext(session=session.to_dict() if session else None)
        if result.cycle_id:
            cycle = next((c for c in cycles if c.id == result.cycle_id), None)
            context.cycle = cycle.to_dict() if cycle else None
        if result.level is Level.FIELD and result.raw.column:
            context.field_type = field_type(result.raw.column)
            context.field_importance = field_importance_score(result.raw.column, result.raw.field_label)
        return context

    def metadata(self, result: RankedResult, cache: dict[str, Any]) -> dict[str, Any]:
        session, cycles = self._session(result.session_id, cache)
        meta: dict[str, Any] = {"created_at": result.raw.created_at}
        if session is not None:
            meta["session_started_at"] = session.started_at
            meta["session_objective"] = session.plan_objective
            meta["session_completed"] = session.completed
        if cycles:
            hits = sum(1 for c in cycles if c.status is CycleStatus.HIT)
            meta["total_cycles"] = len(cycles)
            meta["success_rate"] = round(hits / len(cycles) * 100)
        if result.cycle_id:
            cycle = next((c for c in cycles if c.id == result.cycle_id), None)
            if cycle is not None:
                meta["cycle_number"] = cycle.index
                meta["cycle_status"] = cycle.status.value if cycle.status else None
                meta["cycle_objective"] = cycle.plan_goal
                meta["cycle_started_at"] = cycle.started_at
        return meta


def result_preview(result: RankedResult, query: str = "") -> dict[str, Any]:
    """Title, subtitle and content lines for displaying one result."""
    meta = result.metadata or {}
    date = (result.raw.created_at or "")[:10]
    if result.level is Level.SESSION:
        title = meta.get("session_objective") or "Session summary"
        subtitle = f"Session, {(meta.get('session_started_at') or date)[:10]}"
    elif result.level is Level.CYCLE:
        title = meta.get("cycle_objective") or "Cycle"
        subtitle = f"Cycle, {(meta.get('cycle_started_at') or date)[:10]}"
    else:
        title = result.raw.field_label or "Field response"
        subtitle = f"Field, {date}"
    details = [f"score {result.composite_score:.2f}"]
    if "success_rate" in meta:
        details.append(f"{meta['success_rate']}% hit rate over {meta['total_cycles']} cycles")
    return {
        "title": title,
        "subtitle": subtitle,
        "content": result.snippet or generate_query_snippet(result.text, query),
        "metadata": details,
    }
