"""Record data model for cortexmem.

Defines the :class:`Record` dataclass used throughout the library to
represent a single stored memory, plus the closed set of memory types and
the validation helpers shared by the store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

JsonValue = Union[None, bool, int, float, str, list["JsonValue"], dict[str, "JsonValue"]]
"""Any value that survives a round-trip through :func:`json.dumps`."""

FACT = "fact"
DECISION = "decision"
CODE = "code"
CONFIG = "config"
NOTE = "note"

MEMORY_TYPES: tuple[str, ...] = (FACT, DECISION, CODE, CONFIG, NOTE)


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def is_valid_memory_type(value: Any) -> bool:
    """Return ``True`` if *value* is one of :data:`MEMORY_TYPES`."""
    return isinstance(value, str) and value in MEMORY_TYPES


def validate_memory_type(value: Any) -> str:
    """Validate and return a memory type.

    Args:
        value: The candidate type.

    Returns:
        The validated type string.

    Raises:
        ValidationError: If *value* is not in :data:`MEMORY_TYPES`.
    """
    if not is_valid_memory_type(value):
        raise ValidationError(
            f"Invalid memory type: {value!r}. Must be one of: {', '.join(MEMORY_TYPES)}"
        )
    return value


def validate_text_field(name: str, value: Any) -> str:
    """Ensure a required text field is a non-blank string.

    Raises:
        ValidationError: If *value* is not a string or is empty/whitespace.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Memory {name} is required and cannot be empty")
    return value


def validate_tags(tags: Any) -> list[str]:
    """Validate a tag sequence, preserving order and duplicates."""
    if tags is None:
        return []
    if isinstance(tags, str) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("Memory tags must be a sequence of strings")
    return list(tags)


def validate_metadata(metadata: Any) -> dict[str, JsonValue]:
    """Validate that *metadata* is a JSON-serialisable, string-keyed map."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict) or not all(isinstance(k, str) for k in metadata):
        raise ValidationError("Memory metadata must be a dict with string keys")
    try:
        json.dumps(metadata, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Memory metadata is not JSON-serialisable: {exc}") from exc
    return metadata


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass
class Record:
    """A single unit of memory stored in cortexmem.

    Attributes:
        id: Store-local, monotonically assigned identifier (``None`` until
            persisted).
        content: The textual content.  Plaintext unless :attr:`encrypted`
            is ``True``, in which case it is the undecryptable token as
            stored on disk.
        type: One of :data:`MEMORY_TYPES`.
        source: Free-text provenance (file path, tool name, conversation).
        project_id: Identifier of the owning project, ``None`` for records
            written in global mode without an explicit project.
        tags: Ordered tags.
        metadata: Arbitrary JSON-like metadata.
        embedding: Stored embedding vector, if any.
        embedding_model: Name of the model that produced :attr:`embedding`.
        created_at: Creation timestamp (UTC), immutable.
        updated_at: Timestamp of the most recent update (UTC).
        encrypted: ``True`` when the store could not decrypt this record.
    """

    content: str
    type: str
    source: str
    id: int | None = None
    project_id: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, JsonValue] = field(default_factory=dict)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    created_at: datetime | None = field(default_factory=_utcnow)
    updated_at: datetime | None = field(default_factory=_utcnow)
    encrypted: bool = False

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Serialise the record to a JSON-safe dictionary.

        Args:
            include_embedding: Include the raw embedding vector.  Off by
                default since vectors are large and rarely useful in output.

        Returns:
            A dictionary with ISO-8601 timestamps.
        """
        data: dict[str, Any] = {
            "id": self.id,
            "project_id": self.project_id,
            "content": self.content,
            "type": self.type,
            "source": self.source,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "embedding_model": self.embedding_model,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "encrypted": self.encrypted,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def __repr__(self) -> str:  # pragma: no cover
        preview = self.content[:60] + ("..." if len(self.content) > 60 else "")
        return f"Record(id={self.id!r}, type={self.type!r}, content={preview!r})"
