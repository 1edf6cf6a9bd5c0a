"""
Deduplication of ranked search results.

Strategies (selected per call through DeduplicationConfig.strategy):

    none            pass through
    exact           same text after normalizing case, punctuation, spacing
    semantic        greedy clustering by similarity >= semantic_threshold
    hierarchical    per session, one strong session hit beats its cycles,
                    which beat its fields
    session-based   at most max_results_per_session per session
    content-length  collapse near-identical texts, keeping optimal length
    hybrid          exact, semantic, session-based, content-length in turn

Semantic similarity uses string similarity for short texts and cosine
similarity of fresh embeddings for longer ones, falling back to string
similarity if embedding fails.
"""

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from rapidfuzz.distance import Levenshtein

from .types import Level, RankedResult

logger = logging.getLogger(__name__)

SHORT_TEXT_CHARS = 100
LEVENSHTEIN_MAX_CHARS = 200
OPTIMAL_LENGTH = (200, 500)
STRONG_SESSION_SCORE = 0.7


class DedupStrategy(str, Enum):
    NONE = "none"
    EXACT = "exact"
    SEMANTIC = "semantic"
    HIERARCHICAL = "hierarchical"
    SESSION_BASED = "session-based"
    CONTENT_LENGTH = "content-length"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class DeduplicationConfig:
    strategy: DedupStrategy = DedupStrategy.SEMANTIC
    semantic_threshold: float = 0.85
    max_results_per_session: int = 3
    max_results_per_cycle: int = 2
    preserve_highest_score: bool = True
    content_similarity_threshold: float = 0.9


DEFAULT_DEDUPLICATION_CONFIG = DeduplicationConfig()


# -----------------------------------------------------------------------------
# Similarity
# -----------------------------------------------------------------------------

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _SPACES.sub(" ", _NON_WORD.sub("", text.lower())).strip()


def content_similarity(text1: str, text2: str) -> float:
    """Word Jaccard similarity, averaged with edit similarity for short texts."""
    norm1, norm2 = normalize_text(text1), normalize_text(text2)
    if norm1 == norm2:
        return 1.0
    words1, words2 = set(norm1.split()), set(norm2.split())
    union = words1 | words2
    jaccard = len(words1 & words2) / len(union) if union else 0.0
    if len(text1) < LEVENSHTEIN_MAX_CHARS and len(text2) < LEVENSHTEIN_MAX_CHARS:
        return (jaccard + Levenshtein.normalized_similarity(text1, text2)) / 2
    return jaccard


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def is_optimal_length(text: str) -> bool:
    return OPTIMAL_LENGTH[0] <= len(text) <= OPTIMAL_LENGTH[1]


def _by_score(results: list[RankedResult]) -> list[RankedResult]:
    return sorted(results, key=lambda r: r.composite_score, reverse=True)


# -----------------------------------------------------------------------------
# Deduplicator
# -----------------------------------------------------------------------------

class Deduplicator:
    """
    Applies a deduplication strategy.

    Args:
        embed: Optional text -> vector function for semantic similarity of
            long texts. Without it, string similarity is used throughout.
    """

    def __init__(self, embed: Optional[Callable[[str], list[float]]] = None):
        self._embed = embed
        self._cache: dict[str, list[float]] = {}

    def deduplicate(
        self,
        results: list[RankedResult],
        config: DeduplicationConfig = DEFAULT_DEDUPLICATION_CONFIG,
    ) -> list[RankedResult]:
        strategy = DedupStrategy(config.strategy)
        if strategy is DedupStrategy.NONE or len(results) <= 1:
            return list(results)
        self._cache = {}
        try:
            handler = {
                DedupStrategy.EXACT: self.exact,
                DedupStrategy.SEMANTIC: self.semantic,
                DedupStrategy.HIERARCHICAL: self.hierarchical,
                DedupStrategy.SESSION_BASED: self.session_based,
                DedupStrategy.CONTENT_LENGTH: self.content_length,
                DedupStrategy.HYBRID: self.hybrid,
            }[strategy]
            return handler(results, config)
        finally:
            self._cache = {}

    # Strategies

    def exact(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        kept: list[RankedResult] = []
        index_by_key: dict[str, int] = {}
        for result in results:
            key = normalize_text(result.text)
            if key not in index_by_key:
                index_by_key[key] = len(kept)
                kept.append(result)
            elif config.preserve_highest_score:
                i = index_by_key[key]
                if result.composite_score > kept[i].composite_score:
                    kept[i] = result
        return kept

    def semantic(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        return [
            self.select_best(cluster, config)
            for cluster in self.cluster(results, config.semantic_threshold)
        ]

    def cluster(
        self, results: list[RankedResult], threshold: float, max_clusters: int | None = None,
    ) -> list[list[RankedResult]]:
        """Greedy clustering: each unclaimed result seeds a cluster of its look-alikes."""
        clusters: list[list[RankedResult]] = []
        claimed: set[int] = set()
        for i, seed in enumerate(results):
            if i in claimed:
                continue
            claimed.add(i)
            members = [seed]
            for j in range(i + 1, len(results)):
                if j in claimed:
                    continue
                if self.similarity(seed.text, results[j].text) >= threshold:
                    members.append(results[j])
                    claimed.add(j)
            clusters.append(members)
            if max_clusters is not None and len(clusters) >= max_clusters:
                break
        return clusters

    def hierarchical(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        kept: list[RankedResult] = []
        for group in _group_by_session(results).values():
            session_hit = next((r for r in group if r.level is Level.SESSION), None)
            cycles = [r for r in group if r.level is Level.CYCLE]
            fields = [r for r in group if r.level is Level.FIELD]
            if session_hit is not None and session_hit.composite_score > STRONG_SESSION_SCORE:
                kept.append(session_hit)
            elif cycles:
                kept.extend(_by_score(cycles)[:config.max_results_per_cycle])
            else:
                kept.extend(_by_score(fields)[:config.max_results_per_session])
        return _by_score(kept)

    def session_based(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        kept: list[RankedResult] = []
        for group in _group_by_session(results).values():
            kept.extend(_by_score(group)[:config.max_results_per_session])
        return _by_score(kept)

    def content_length(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        threshold = config.content_similarity_threshold
        kept: list[RankedResult] = []
        for result in results:
            match = next(
                (i for i, existing in enumerate(kept)
                 if content_similarity(result.text, existing.text) >= threshold),
                None,
            )
            if match is None:
                kept.append(result)
                continue
            existing = kept[match]
            if is_optimal_length(result.text) and not is_optimal_length(existing.text):
                kept[match] = result
            elif (config.preserve_highest_score
                  and is_optimal_length(result.text) == is_optimal_length(existing.text)
                  and result.composite_score > existing.composite_score):
                kept[match] = result
        return kept

    def hybrid(self, results: list[RankedResult], config: DeduplicationConfig) -> list[RankedResult]:
        results = self.exact(results, config)
        results = self.semantic(results, config)
        results = self.session_based(results, config)
        return self.content_length(results, config)

    # Helpers

    def select_best(self, group: list[RankedResult], config: DeduplicationConfig) -> RankedResult:
        """Representative of a cluster of near-duplicates."""
        if len(group) == 1:
            return group[0]
        ordered = _by_score(group)
        if config.preserve_highest_score:
            return ordered[0]
        for level in (Level.SESSION, Level.CYCLE):
            for r in ordered:
                if r.level is level:
                    return r
        for r in ordered:
            if is_optimal_length(r.text):
                return r
        return ordered[0]

    def similarity(self, text1: str, text2: str) -> float:
        if (len(text1) < SHORT_TEXT_CHARS and len(text2) < SHORT_TEXT_CHARS) or self._embed is None:
            return content_similarity(text1, text2)
        try:
            return cosine_similarity(self._vector(text1), self._vector(text2))
        except Exception as e:
            logger.warning("Embedding similarity failed, using string similarity: %s", e)
            return content_similarity(text1, text2)

    def _vector(self, text: str) -> list[float]:
        if text not in self._cache:
            self._cache[text] = self._embed(text)
        return self._cache[text]


def _group_by_session(results: list[RankedResult]) -> dict[str, list[RankedResult]]:
    groups: dict[str, list[RankedResult]] = {}
    for r in results:
        groups.setdefault(r.session_id, []).append(r)
    return groups


def deduplicate(
    results: list[RankedResult],
    config: DeduplicationConfig = DEFAULT_DEDUPLICATION_CONFIG,
    embed: Optional[Callable[[str], list[float]]] = None,
) -> list[RankedResult]:
    """Convenience wrapper around Deduplicator."""
    return Deduplicator(embed).deduplicate(results, config)
