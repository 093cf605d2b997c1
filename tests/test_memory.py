"""Tests for the Record dataclass and the shared validation helpers."""

from __future__ import annotations

import json
import math

import pytest

from cortexmem.errors import ValidationError
from cortexmem.memory import (
    MEMORY_TYPES,
    Record,
    is_valid_memory_type,
    validate_memory_type,
    validate_metadata,
    validate_tags,
    validate_text_field,
)

# ------------------------------------------------------------------
# Memory types
# ------------------------------------------------------------------


def test_memory_types_are_closed():
    assert MEMORY_TYPES == ("fact", "decision", "code", "config", "note")
    for value in MEMORY_TYPES:
        assert is_valid_memory_type(value)
    assert not is_valid_memory_type("Fact")
    assert not is_valid_memory_type(None)


def test_validate_memory_type_raises():
    assert validate_memory_type("code") == "code"
    with pytest.raises(ValidationError, match="Invalid memory type"):
        validate_memory_type("todo")


def test_validation_error_is_value_error():
    """Callers that catch ValueError keep working."""
    with pytest.raises(ValueError):
        validate_memory_type("todo")


# ------------------------------------------------------------------
# Field validation
# ------------------------------------------------------------------


@pytest.mark.parametrize("value", ["", "   ", "\n\t", None, 42])
def test_blank_text_rejected(value):
    with pytest.raises(ValidationError):
        validate_text_field("content", value)


def test_tags_default_and_order():
    assert validate_tags(None) == []
    assert validate_tags(("b", "a", "b")) == ["b", "a", "b"]


@pytest.mark.parametrize("tags", ["auth", ["ok", 3]])
def test_bad_tags_rejected(tags):
    with pytest.raises(ValidationError):
        validate_tags(tags)


def test_metadata_accepts_json_values():
    meta = {"a": 1, "b": [True, None, 2.5], "c": {"d": "e"}}
    assert validate_metadata(meta) == meta
    assert validate_metadata(None) == {}


@pytest.mark.parametrize(
    "meta",
    [["not", "a", "dict"], {1: "int key"}, {"x": object()}, {"nan": math.nan}],
)
def test_bad_metadata_rejected(meta):
    with pytest.raises(ValidationError):
        validate_metadata(meta)


# ------------------------------------------------------------------
# Record
# ------------------------------------------------------------------


def test_record_defaults():
    record = Record(content="hello", type="note", source="cli")
    assert record.id is None
    assert record.tags == []
    assert record.metadata == {}
    assert record.embedding is None
    assert record.encrypted is False
    assert record.created_at.tzinfo is not None
    assert not record.has_embedding


def test_record_to_dict_is_json_safe():
    record = Record(
        content="hello",
        type="fact",
        source="cli",
        id=7,
        project_id="abc",
        tags=["x"],
        embedding=[0.1, 0.2],
        embedding_model="m",
    )
    data = record.to_dict()
    assert "embedding" not in data
    assert data["id"] == 7
    assert data["tags"] == ["x"]
    json.dumps(data)

    with_vector = record.to_dict(include_embedding=True)
    assert with_vector["embedding"] == [0.1, 0.2]
