"""Multi-source context fusion for cortexmem.

The :class:`ContextFuser` gathers text from store queries, files and
inline session notes, removes duplicates, orders the pieces by weight and
packs them into a single blob that fits a token budget.

Token counts are estimated as ``ceil(chars / 4)``.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from .errors import ValidationError
from .memory import Record

if TYPE_CHECKING:
    from .guard import ContextGuard
    from .store import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 4000
MEMORY_SOURCE_LIMIT = 10
MIN_PARTIAL_CHARS = 100
SEMANTIC_DUPLICATE_THRESHOLD = 0.8
ELLIPSIS = "..."

DEDUPE_STRATEGIES: tuple[str, ...] = ("exact", "semantic", "none")
OUTPUT_FORMATS: tuple[str, ...] = ("text", "markdown", "json")
SOURCE_TYPES: tuple[str, ...] = ("memory", "file", "session")

_TEXT_SEPARATOR = "\n\n"
_JSON_SEPARATOR = ","


def estimate_tokens(text: str) -> int:
    """Approximate token count of *text*."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity of two texts, case-insensitive."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class ContextSource:
    """Describes one place to pull context from.

    Attributes:
        type: ``"memory"`` (store search), ``"file"`` or ``"session"``.
        query: Search text for ``memory`` sources.
        path: File path for ``file`` sources.
        data: Literal text for ``session`` sources.
        weight: Ordering weight, higher first.
    """

    type: str
    query: str | None = None
    path: str | None = None
    data: str | None = None
    weight: float = 1.0


SourceLike = Union[ContextSource, Mapping[str, Any]]


@dataclass
class FusionChunk:
    type: str
    content: str
    weight: float


@dataclass
class FuseResult:
    """Output of :meth:`ContextFuser.fuse`.

    Attributes:
        content: The fused text.
        token_count: Estimated tokens in :attr:`content`.
        sources: ``{"type", "count"}`` per source type that survived
            deduplication.
        original_token_count: Estimated tokens across every fetched chunk
            before deduplication.
        saved_tokens: ``original_token_count - token_count``, floored at 0.
        savings_percentage: Integer percentage in ``[0, 100]``.
    """

    content: str
    token_count: int
    sources: list[dict[str, Any]] = field(default_factory=list)
    original_token_count: int = 0
    saved_tokens: int = 0
    savings_percentage: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "token_count": self.token_count,
            "sources": [dict(s) for s in self.sources],
            "original_token_count": self.original_token_count,
            "saved_tokens": self.saved_tokens,
            "savings_percentage": self.savings_percentage,
        }


def _coerce_source(source: SourceLike) -> ContextSource:
    if isinstance(source, ContextSource):
        return source
    if not isinstance(source, Mapping):
        raise ValidationError(f"Context source must be a ContextSource or mapping, got {source!r}")
    weight = source.get("weight")
    return ContextSource(
        type=source.get("type") or "",
        query=source.get("query"),
        path=source.get("path"),
        data=source.get("data"),
        weight=1.0 if weight is None else weight,
    )


def _weight_of(source: ContextSource) -> float:
    try:
        return float(source.weight)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Context source weight must be a number, got {source.weight!r}") from exc


def format_record(record: Record) -> str:
    """Render a record as ``[type] [tag1, tag2] content``."""
    tag_str = f" [{', '.join(record.tags)}]" if record.tags else ""
    return f"[{record.type}]{tag_str} {record.content}"


# ---------------------------------------------------------------------------
# Fuser
# ---------------------------------------------------------------------------


class ContextFuser:
    """Merges heterogeneous context sources under a token budget.

    Args:
        store: Store queried by ``memory`` sources.
        guard: Optional :class:`~cortexmem.guard.ContextGuard`.  Together
            with *guard_filters*, every fetched chunk is redacted before
            deduplication.
        guard_filters: Filter names passed to the guard.
    """

    def __init__(
        self,
        store: MemoryStore,
        guard: ContextGuard | None = None,
        guard_filters: Sequence[str] | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._guard_filters = list(guard_filters or [])

    def fuse(
        self,
        sources: Iterable[SourceLike],
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        dedupe: str = "exact",
        format: str = "text",
    ) -> FuseResult:
        """Fetch, deduplicate, order and pack *sources*.

        Args:
            sources: :class:`ContextSource` objects or equivalent dicts.
            max_tokens: Token budget for the output.
            dedupe: ``"exact"``, ``"semantic"`` or ``"none"``.
            format: ``"text"``, ``"markdown"`` or ``"json"``.

        Returns:
            A :class:`FuseResult`.  ``token_count`` never exceeds
            *max_tokens*.

        Raises:
            ValidationError: On an unknown strategy or format, or a
                negative budget.
        """
        if dedupe not in DEDUPE_STRATEGIES:
            raise ValidationError(
                f"Invalid dedupe strategy: {dedupe!r}. Must be one of: {', '.join(DEDUPE_STRATEGIES)}"
            )
        if format not in OUTPUT_FORMATS:
            raise ValidationError(
                f"Invalid output format: {format!r}. Must be one of: {', '.join(OUTPUT_FORMATS)}"
            )
        if max_tokens < 0:
            raise ValidationError(f"max_tokens must be >= 0, got {max_tokens}")

        chunks: list[FusionChunk] = []
        for raw in sources:
            source = _coerce_source(raw)
            content = self._fetch(source)
            if content:
                chunks.append(FusionChunk(source.type, content, _weight_of(source)))

        kept = self._deduplicate(chunks, dedupe)
        ordered = sorted(kept, key=lambda c: c.weight, reverse=True)
        combined = self._combine(ordered, max_tokens, format)

        original = sum(estimate_tokens(c.content) for c in chunks)
        final = estimate_tokens(combined)
        saved = max(0, original - final)
        percentage = _round_half_up(100 * saved / original) if original else 0

        counts: dict[str, int] = {}
        for chunk in kept:
            counts[chunk.type] = counts.get(chunk.type, 0) + 1

        logger.debug(
            "Fused %d/%d chunks into %d tokens (saved %d)", len(kept), len(chunks), final, saved
        )
        return FuseResult(
            content=combined,
            token_count=final,
            sources=[{"type": t, "count": n} for t, n in counts.items()],
            original_token_count=original,
            saved_tokens=saved,
            savings_percentage=percentage,
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _fetch(self, source: ContextSource) -> str | None:
        if source.type == "memory":
            content = self._fetch_memory(source)
        elif source.type == "file":
            content = self._fetch_file(source)
        elif source.type == "session":
            content = source.data or None
        else:
            logger.debug("Skipping unsupported context source type %r", source.type)
            return None

        if content and self._guard is not None and self._guard_filters:
            content = self._guard.guard(content, self._guard_filters, mode="redact").content
        return content

    def _fetch_memory(self, source: ContextSource) -> str | None:
        if not source.query:
            return None
        records = self._store.search(source.query, limit=MEMORY_SOURCE_LIMIT)
        if not records:
            return None
        return "\n\n".join(format_record(r) for r in records)

    def _fetch_file(self, source: ContextSource) -> str | None:
        if not source.path:
            return None
        try:
            with open(source.path, encoding="utf-8") as fh:
                return fh.read() or None
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Could not read context file %s: %s", source.path, exc)
            return None

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    @staticmethod
    def _deduplicate(chunks: list[FusionChunk], strategy: str) -> list[FusionChunk]:
        if strategy == "none":
            return list(chunks)

        if strategy == "exact":
            seen: set[str] = set()
            result: list[FusionChunk] = []
            for chunk in chunks:
                key = chunk.content.strip().lower()
                if key in seen:
                    continue
                seen.add(key)
                result.append(chunk)
            return result

        result = []
        for chunk in chunks:
            if any(
                jaccard_similarity(kept.content, chunk.content) > SEMANTIC_DUPLICATE_THRESHOLD
                for kept in result
            ):
                continue
            result.append(chunk)
        return result

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    @staticmethod
    def _format_chunk(chunk: FusionChunk, fmt: str) -> str:
        if fmt == "markdown":
            return f"### {chunk.type.upper()} (weight: {chunk.weight:g})\n\n{chunk.content}"
        return f"[{chunk.type}] {chunk.content}"

    def _combine(self, chunks: list[FusionChunk], max_tokens: int, fmt: str) -> str:
        if fmt == "json":
            return self._combine_json(chunks, max_tokens)

        max_chars = max_tokens * CHARS_PER_TOKEN
        result = ""
        for chunk in chunks:
            formatted = self._format_chunk(chunk, fmt)
            separator = _TEXT_SEPARATOR if result else ""
            if len(result) + len(separator) + len(formatted) > max_chars:
                remaining = max_chars - len(result) - len(separator) - len(ELLIPSIS)
                if remaining >= MIN_PARTIAL_CHARS:
                    result += separator + formatted[:remaining] + ELLIPSIS
                break
            result += separator + formatted
        return result

    @staticmethod
    def _json_entry(chunk: FusionChunk, content: str) -> str:
        return json.dumps(
            {"type": chunk.type, "content": content, "weight": chunk.weight},
            ensure_ascii=False,
        )

    def _combine_json(self, chunks: list[FusionChunk], max_tokens: int) -> str:
        # Two characters are reserved for the enclosing brackets.
        budget = max_tokens * CHARS_PER_TOKEN - 2
        entries: list[str] = []
        used = 0
        for chunk in chunks:
            separator = _JSON_SEPARATOR if entries else ""
            entry = self._json_entry(chunk, chunk.content)
            if used + len(separator) + len(entry) <= budget:
                entries.append(entry)
                used += len(separator) + len(entry)
                continue

            available = budget - used - len(separator)
            partial = self._partial_json_entry(chunk, available)
            if partial is not None:
                entries.append(partial)
            break
        return "[" + _JSON_SEPARATOR.join(entries) + "]"

    def _partial_json_entry(self, chunk: FusionChunk, available: int) -> str | None:
        """Largest truncated entry that serialises within *available* chars."""
        overhead = len(self._json_entry(chunk, ELLIPSIS))
        keep = min(len(chunk.content), available - overhead)
        while keep >= MIN_PARTIAL_CHARS:
            entry = self._json_entry(chunk, chunk.content[:keep] + ELLIPSIS)
            overflow = len(entry) - available
            if overflow <= 0:
                return entry
            keep -= overflow
        return None
