"""
Composite ranking of vector search results.

The composite score is a weighted sum of seven signals, each in [0, 1]:

    vector similarity   1 - cosine distance
    recency             exp(-0.693 * age / half_life), 0 past max_age
    level boost         base per level, amplified when the query names it
    session status      neutral 0.5 until sessions carry outcome metadata
    cycle status        neutral 0.5 likewise
    content length      peaks for 200-500 character texts
    field importance    objective > plan/review > other

Results created within the last week get a further x1.2, and the final
score is clamped to [0, 1]. Sorting is stable, so equal scores keep
their retrieval order.
"""

import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable

from .types import Level, RankedResult, RawSearchResult, age_in_days

RECENT_DAYS = 7.0
NEUTRAL_STATUS_SCORE = 0.5

LEVEL_BASE_SCORES = {
    Level.FIELD: 0.6,
    Level.CYCLE: 0.7,
    Level.SESSION: 0.8,
}


@dataclass(frozen=True)
class RankingWeights:
    vector_similarity: float = 0.40
    recency: float = 0.20
    level_boost: float = 0.15
    session_status: float = 0.10
    cycle_status: float = 0.10
    content_length: float = 0.03
    field_importance: float = 0.02


@dataclass(frozen=True)
class RankingBoosts:
    recent_sessions: float = 1.2
    completed_sessions: float = 1.1
    hit_cycles: float = 1.15
    planning_fields: float = 1.05
    review_fields: float = 1.1


@dataclass(frozen=True)
class RecencyDecay:
    half_life_days: float = 7.0
    max_age_days: float = 90.0


@dataclass(frozen=True)
class RankingConfig:
    weights: RankingWeights = field(default_factory=RankingWeights)
    boosts: RankingBoosts = field(default_factory=RankingBoosts)
    recency: RecencyDecay = field(default_factory=RecencyDecay)


DEFAULT_RANKING_CONFIG = RankingConfig()


# -----------------------------------------------------------------------------
# Signals
# -----------------------------------------------------------------------------

def recency_score(age_days: float | None, decay: RecencyDecay = RecencyDecay()) -> float:
    """Exponential decay by age; 0 beyond max age or when age is unknown."""
    if age_days is None:
        return 0.0
    if age_days > decay.max_age_days:
        return 0.0
    age_days = max(0.0, age_days)
    return math.exp(-0.693 * age_days / decay.half_life_days)


def level_boost(level: Level | str, query: str) -> float:
    query_lower = query.lower()
    level = Level(level)
    score = LEVEL_BASE_SCORES.get(level, 0.5)
    if "session" in query_lower and level is Level.SESSION:
        score *= 1.3
    elif "cycle" in query_lower and level is Level.CYCLE:
        score *= 1.3
    elif "specific" in query_lower and level is Level.FIELD:
        score *= 1.2
    return score


def session_status_score(result: RawSearchResult) -> float:
    return NEUTRAL_STATUS_SCORE


def cycle_status_score(result: RawSearchResult) -> float:
    return NEUTRAL_STATUS_SCORE


def content_length_score(text: str) -> float:
    length = len(text or "")
    if length < 50:
        return 0.3
    if length < 200:
        return 0.6
    if length < 500:
        return 1.0
    if length < 1000:
        return 0.8
    if length < 2000:
        return 0.6
    return 0.4


def field_importance(result: RawSearchResult, boosts: RankingBoosts = RankingBoosts()) -> float:
    column = (result.column or "").lower()
    label = (result.field_label or "").lower()
    if "objective" in column or "objective" in label:
        return 1.0
    if any(word in column for word in ("plan", "intention", "review", "outcome")):
        return 0.8
    if "plan" in label:
        return 0.7 * boosts.planning_fields
    if "review" in label:
        return 0.7 * boosts.review_fields
    return 0.5


def score_breakdown(
    result: RawSearchResult,
    query: str,
    config: RankingConfig = DEFAULT_RANKING_CONFIG,
    now: datetime | None = None,
) -> dict[str, float]:
    """All signals and the final composite score, for debugging."""
    now = now or datetime.now(timezone.utc)
    age = age_in_days(result.created_at, now)
    signals = {
        "vector_similarity": result.vector_score,
        "recency": recency_score(age, config.recency),
        "level_boost": level_boost(result.level, query),
        "session_status": session_status_score(result),
        "cycle_status": cycle_status_score(result),
        "content_length": content_length_score(result.text),
        "field_importance": field_importance(result, config.boosts),
    }
    weights = config.weights
    composite = sum(signals[name] * getattr(weights, name) for name in signals)
    if age is not None and age <= RECENT_DAYS:
        composite *= config.boosts.recent_sessions
    signals["composite"] = max(0.0, min(composite, 1.0))
    return signals


def score(
    result: RawSearchResult,
    query: str,
    config: RankingConfig = DEFAULT_RANKING_CONFIG,
    now: datetime | None = None,
) -> float:
    """Composite score in [0, 1]."""
    return score_breakdown(result, query, config, now)["composite"]


def rank(
    results: Iterable[RawSearchResult],
    query: str,
    config: RankingConfig = DEFAULT_RANKING_CONFIG,
    now: datetime | None = None,
) -> list[RankedResult]:
    """Score, sort (stable, descending) and number results from 1."""
    now = now or datetime.now(timezone.utc)
    ranked = [
        RankedResult(raw=r, vector_score=r.vector_score, composite_score=score(r, query, config, now))
        for r in results
    ]
    ranked.sort(key=lambda r: r.composite_score, reverse=True)
    return renumber(ranked)


def renumber(results: list[RankedResult]) -> list[RankedResult]:
    for i, result in enumerate(results):
        result.rank = i + 1
    return results


# -----------------------------------------------------------------------------
# Query-aware adjustments
# -----------------------------------------------------------------------------

def _terms(query: str) -> list[str]:
    return [t for t in query.lower().split() if t]


def text_relevance(text: str, query: str) -> float:
    """Share of query terms found in text, whole words counting double."""
    terms = _terms(query)
    if not terms:
        return 0.0
    text_lower = text.lower()
    matches = 0
    total = 0.0
    for term in terms:
        if term in text_lower:
            matches += 1
            if re.search(rf"\b{re.escape(term)}\b", text_lower):
                total += 1.0
            else:
                total += 0.5
    coverage = matches / len(terms)
    return coverage * 0.6 + (total / len(terms)) * 0.4


def position_boost(text: str, query: str) -> float:
    """Average earliness of the query terms that occur in text."""
    text_lower = text.lower()
    positions = []
    for term in _terms(query):
        index = text_lower.find(term)
        if index != -1:
            positions.append(max(0.0, 1 - index / len(text)))
    return sum(positions) / len(positions) if positions else 0.0


def adjust_for_context(
    results: list[RankedResult], search_type: str | None, now: datetime | None = None,
) -> list[RankedResult]:
    """
    Re-weight for a search style: "recent" favours last week's results,
    "specific" favours field-level answers. Scores stay clamped to 1.
    """
    if search_type not in ("recent", "specific"):
        return results
    now = now or datetime.now(timezone.utc)
    adjusted = []
    for r in results:
        factor = 1.0
        if search_type == "recent":
            age = age_in_days(r.raw.created_at, now)
            if age is not None and age <= RECENT_DAYS:
                factor = 1.3
        elif r.level is Level.FIELD:
            factor = 1.2
        adjusted.append(replace(r, composite_score=min(r.composite_score * factor, 1.0)))
    adjusted.sort(key=lambda r: r.composite_score, reverse=True)
    return renumber(adjusted)


def diversity_adjust(results: list[RankedResult], target: float = 0.3) -> list[RankedResult]:
    """Penalize sessions and levels that dominate the result list."""
    session_counts: dict[str, int] = {}
    level_counts: dict[Level, int] = {}
    for r in results:
        session_counts[r.session_id] = session_counts.get(r.session_id, 0) + 1
        level_counts[r.level] = level_counts.get(r.level, 0) + 1
    adjusted = []
    for r in results:
        penalty = (
            max(0.0, 1 - (session_counts[r.session_id] - 1) * target) *
            max(0.0, 1 - (level_counts[r.level] - 1) * target)
        )
        adjusted.append(replace(r, composite_score=r.composite_score * penalty))
    adjusted.sort(key=lambda r: r.composite_score, reverse=True)
    return renumber(adjusted)
