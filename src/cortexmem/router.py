"""Relevance routing for cortexmem.

Given a free-text task description, the :class:`ContextRouter` pulls
candidate records from a :class:`~cortexmem.store.MemoryStore` and ranks
them by a weighted blend of recency, tag overlap, type priority, keyword
density and (when an embedding provider is available) semantic
similarity.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .embeddings import EmbeddingProvider, cosine_similarity
from .errors import ProviderError, ValidationError
from .memory import Record

if TYPE_CHECKING:
    from .store import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring tables
# ---------------------------------------------------------------------------

TYPE_PRIORITY: dict[str, float] = {
    "decision": 1.0,
    "fact": 0.8,
    "code": 0.7,
    "config": 0.6,
    "note": 0.5,
}

FILE_BONUS_WEIGHT = 0.1
RECENCY_WINDOW_DAYS = 30.0
CANDIDATE_MULTIPLIER = 3

STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would
    could should may might must shall can need dare to of in for on with at by
    from as into through during before after above below between under again
    further then once here there when where why how all each few more most other
    some such no nor not only own same so than too very just and but if or
    because until while although though i me my myself we our you your he she
    it its they them what which who whom this that these those am about against
    any both implement implementing create creating add adding work working make
    making get getting set setting
    """.split()
)

_NON_WORD = re.compile(r"[^a-z0-9\s\-_]")


@dataclass
class RoutingWeights:
    """Weights for each scoring signal.

    The defaults sum to 1.0.  Other weights are normalised by their
    :meth:`total` when scoring.  When no query embedding is available the
    ``semantic`` weight is applied to keyword density instead.

    Attributes:
        recency: Newer records score higher.
        tag_match: Share of the requested tags present on the record.
        type_priority: Fixed per-type priority (see :data:`TYPE_PRIORITY`).
        keyword_density: Share of task keywords found in the content.
        semantic: Cosine similarity between task and record embeddings.
            ``0`` disables embedding the task.
    """

    recency: float = 0.15
    tag_match: float = 0.15
    type_priority: float = 0.10
    keyword_density: float = 0.20
    semantic: float = 0.40

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0:
                raise ValidationError(f"Routing weight {f.name} must be >= 0, got {value}")

    def total(self) -> float:
        """Return the sum of all weights."""
        return (
            self.recency + self.tag_match + self.type_priority
            + self.keyword_density + self.semantic
        )


@dataclass
class ScoredCandidate:
    """A routed record with its score in ``[0, 1]`` and a diagnostic reason."""

    record: Record
    score: float
    reason: str


# ---------------------------------------------------------------------------
# Feature helpers
# ---------------------------------------------------------------------------


def extract_keywords(task: str) -> list[str]:
    """Lower-case, strip punctuation, drop short and stop words, dedupe in order."""
    tokens = _NON_WORD.sub(" ", task.lower()).split()
    keywords = [t for t in tokens if len(t) > 2 and t not in STOP_WORDS]
    return list(dict.fromkeys(keywords))


def _age_days(record: Record, now: datetime) -> float | None:
    created = record.created_at
    if created is None:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return max(0.0, (now - created).total_seconds()) / 86400.0


def recency_score(record: Record, now: datetime) -> float:
    age = _age_days(record, now)
    if age is None:
        return 0.5
    return max(0.1, 1.0 - age / RECENCY_WINDOW_DAYS)


def _matched_tags(record: Record, tags: Sequence[str] | None) -> list[str]:
    if not tags:
        return []
    own = {t.lower() for t in record.tags}
    return [t for t in tags if t.lower() in own]


def tag_score(record: Record, tags: Sequence[str] | None) -> float:
    if not tags:
        return 1.0
    return len(_matched_tags(record, tags)) / len(tags)


def _matched_keywords(record: Record, keywords: Sequence[str]) -> list[str]:
    content = record.content.lower()
    return [k for k in keywords if k in content]


def keyword_score(record: Record, keywords: Sequence[str]) -> float:
    if not keywords:
        return 0.5
    return len(_matched_keywords(record, keywords)) / len(keywords)


def file_bonus(source: str, current_file: str) -> float:
    """Shared path segments between *source* and *current_file*, over 3, capped at 1."""
    source_parts = [p for p in source.lower().split("/") if p]
    file_parts = set(p for p in current_file.lower().split("/") if p)
    matches = sum(1 for part in source_parts if part in file_parts)
    return min(1.0, matches / 3.0) if matches else 0.0


def _usable_embedding(record: Record, query_embedding: Sequence[float] | None) -> bool:
    return bool(
        query_embedding
        and record.embedding
        and len(record.embedding) == len(query_embedding)
    )


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class ContextRouter:
    """Selects the records most relevant to a task.

    Args:
        store: The store to pull candidates from.
        weights: :class:`RoutingWeights`, or a mapping of overrides applied
            on top of the defaults.
    """

    def __init__(
        self,
        store: MemoryStore,
        weights: RoutingWeights | Mapping[str, float] | None = None,
    ) -> None:
        self._store = store
        if weights is None:
            self.weights = RoutingWeights()
        elif isinstance(weights, RoutingWeights):
            self.weights = weights
        else:
            try:
                self.weights = RoutingWeights(**dict(weights))
            except TypeError as exc:
                raise ValidationError(f"Unknown routing weight: {exc}") from exc
        self._provider: EmbeddingProvider | None = None

    def set_embedding_provider(self, provider: EmbeddingProvider | None) -> None:
        """Use *provider* for task embeddings instead of the store's."""
        self._provider = provider

    @property
    def embedding_provider(self) -> EmbeddingProvider | None:
        return self._provider or self._store.embedding_provider

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def route(
        self,
        task: str,
        *,
        current_file: str | None = None,
        tags: Sequence[str] | None = None,
        type: str | None = None,
        limit: int = 5,
        now: datetime | None = None,
    ) -> list[Record]:
        """Return the *limit* most relevant records for *task*."""
        scored = self.route_with_scores(
            task, current_file=current_file, tags=tags, type=type, limit=limit, now=now
        )
        return [c.record for c in scored]

    def route_with_scores(
        self,
        task: str,
        *,
        current_file: str | None = None,
        tags: Sequence[str] | None = None,
        type: str | None = None,
        limit: int = 5,
        now: datetime | None = None,
    ) -> list[ScoredCandidate]:
        """Rank candidate records for *task* and explain each score.

        Args:
            task: Free-text task description.
            current_file: Path being edited; records whose ``source``
                shares path segments with it get a small bonus.
            tags: Preferred tags.
            type: Restrict candidates to one memory type.
            limit: Number of results.
            now: Reference time for recency.  Defaults to UTC now.

        Returns:
            Up to *limit* :class:`ScoredCandidate` objects, best first.
            Ties keep retrieval order.
        """
        if limit <= 0:
            return []
        if now is None:
            now = datetime.now(timezone.utc)

        keywords = extract_keywords(task)
        candidates = self._store.search(
            " ".join(keywords), type=type, limit=limit * CANDIDATE_MULTIPLIER
        )
        if not candidates:
            candidates = self._store.list(type=type, limit=limit * CANDIDATE_MULTIPLIER)
        if not candidates:
            return []

        query_embedding = self._embed_task(task)

        scored = [
            ScoredCandidate(
                record=record,
                score=self.score(
                    record,
                    keywords,
                    tags=tags,
                    current_file=current_file,
                    query_embedding=query_embedding,
                    now=now,
                ),
                reason=self.explain(record, keywords, tags, query_embedding, now),
            )
            for record in candidates
        ]
        scored.sort(key=lambda c: c.score, reverse=True)
        for c in scored:
            logger.debug("route score %.3f for memory %s (%s)", c.score, c.record.id, c.reason)
        return scored[:limit]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _embed_task(self, task: str) -> list[float] | None:
        provider = self.embedding_provider
        if provider is None or self.weights.semantic <= 0:
            return None
        try:
            return provider.embed(task)
        except ProviderError as exc:
            logger.warning("Embedding provider failed, routing by keywords only: %s", exc)
            return None

    def score(
        self,
        record: Record,
        keywords: Sequence[str],
        *,
        tags: Sequence[str] | None = None,
        current_file: str | None = None,
        query_embedding: Sequence[float] | None = None,
        now: datetime | None = None,
    ) -> float:
        """Compute the relevance score of one record, clamped to ``[0, 1]``.

        When a semantic score cannot be computed for the record (no query
        embedding, no stored embedding, or a dimension mismatch) the
        semantic weight goes to keyword density instead.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        w = self.weights

        keywords_part = keyword_score(record, keywords)
        total = (
            w.recency * recency_score(record, now)
            + w.tag_match * tag_score(record, tags)
            + w.type_priority * TYPE_PRIORITY.get(record.type, 0.5)
            + w.keyword_density * keywords_part
        )

        if _usable_embedding(record, query_embedding):
            similarity = cosine_similarity(query_embedding, record.embedding)
            total += w.semantic * (similarity + 1.0) / 2.0
        else:
            total += w.semantic * keywords_part

        # Custom weights need not sum to 1; only the file bonus may overshoot.
        weight_sum = w.total()
        total = total / weight_sum if weight_sum > 0 else 0.0

        if current_file and record.source:
            total += FILE_BONUS_WEIGHT * file_bonus(record.source, current_file)

        return max(0.0, min(1.0, total))

    def explain(
        self,
        record: Record,
        keywords: Sequence[str],
        tags: Sequence[str] | None,
        query_embedding: Sequence[float] | None,
        now: datetime,
    ) -> str:
        """Build the human-readable reason string for a routed record."""
        reasons: list[str] = []
        if _usable_embedding(record, query_embedding):
            reasons.append("mode:hybrid")
        reasons.append(f"type:{record.type}")

        matched = _matched_keywords(record, keywords)
        if matched:
            reasons.append(f"keywords:[{','.join(matched[:3])}]")

        matched_tags = _matched_tags(record, tags)
        if matched_tags:
            reasons.append(f"tags:[{','.join(matched_tags)}]")

        age = _age_days(record, now)
        if age is not None:
            days = int(age)
            if days == 0:
                reasons.append("recent:today")
            elif days < 7:
                reasons.append(f"recent:{days}d")

        return " ".join(reasons)
