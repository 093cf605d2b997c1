"""Tests for relevance routing (``cortexmem.router``)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from conftest import FailingEmbedding

from cortexmem.embeddings import LocalEmbedding
from cortexmem.errors import ValidationError
from cortexmem.memory import Record
from cortexmem.router import (
    TYPE_PRIORITY,
    ContextRouter,
    RoutingWeights,
    extract_keywords,
    file_bonus,
    keyword_score,
    recency_score,
    tag_score,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(content="text", type="note", source="s", tags=None, age_days=0.0, embedding=None):
    created = NOW - timedelta(days=age_days)
    return Record(
        content=content,
        type=type,
        source=source,
        id=1,
        tags=tags or [],
        embedding=embedding,
        created_at=created,
        updated_at=created,
    )


# ------------------------------------------------------------------
# Feature helpers
# ------------------------------------------------------------------


def test_extract_keywords():
    assert extract_keywords("Implement the JWT authentication, please!") == [
        "jwt",
        "authentication",
        "please",
    ]
    # Short, stop-word and duplicate tokens are dropped.
    assert extract_keywords("add an API to the api") == ["api"]
    assert extract_keywords("db_pool re-try") == ["db_pool", "re-try"]
    assert extract_keywords("") == []


def test_recency_score_decays_with_floor():
    assert recency_score(_record(age_days=0), NOW) == pytest.approx(1.0)
    assert recency_score(_record(age_days=15), NOW) == pytest.approx(0.5)
    assert recency_score(_record(age_days=300), NOW) == pytest.approx(0.1)
    # Future timestamps count as brand new.
    assert recency_score(_record(age_days=-2), NOW) == pytest.approx(1.0)


def test_tag_score():
    record = _record(tags=["Auth", "api"])
    assert tag_score(record, None) == 1.0
    assert tag_score(record, []) == 1.0
    assert tag_score(record, ["auth"]) == 1.0
    assert tag_score(record, ["auth", "billing"]) == 0.5
    assert tag_score(record, ["billing"]) == 0.0


def test_keyword_score():
    record = _record(content="JWT tokens for authentication")
    assert keyword_score(record, []) == 0.5
    assert keyword_score(record, ["jwt", "authentication"]) == 1.0
    assert keyword_score(record, ["jwt", "billing"]) == 0.5


def test_file_bonus():
    assert file_bonus("src/auth/jwt.py", "src/auth/jwt.py") == 1.0
    assert file_bonus("src/auth/login.py", "src/auth/jwt.py") == pytest.approx(2 / 3)
    assert file_bonus("docs/readme.md", "src/auth/jwt.py") == 0.0


# ------------------------------------------------------------------
# Weights
# ------------------------------------------------------------------


def test_default_weights_sum_to_one():
    assert RoutingWeights().total() == pytest.approx(1.0)


def test_negative_weight_rejected():
    with pytest.raises(ValidationError):
        RoutingWeights(recency=-0.1)


def test_weight_overrides_from_mapping(store):
    router = ContextRouter(store, {"semantic": 0.0})
    assert router.weights.semantic == 0.0
    assert router.weights.recency == 0.15
    with pytest.raises(ValidationError):
        ContextRouter(store, {"popularity": 1.0})


# ------------------------------------------------------------------
# Scoring
# ------------------------------------------------------------------


def test_type_priority_is_monotonic(store):
    router = ContextRouter(store)
    scores = {
        t: router.score(_record(content="same text", type=t), ["same"], now=NOW)
        for t in TYPE_PRIORITY
    }
    ordered = sorted(TYPE_PRIORITY, key=TYPE_PRIORITY.get, reverse=True)
    assert [scores[t] for t in ordered] == sorted(scores.values(), reverse=True)


def test_newer_scores_higher(store):
    router = ContextRouter(store)
    fresh = router.score(_record(age_days=1), ["text"], now=NOW)
    stale = router.score(_record(age_days=20), ["text"], now=NOW)
    assert fresh > stale


def test_score_is_clamped(store):
    router = ContextRouter(store, RoutingWeights(1, 1, 1, 1, 1))
    record = _record(content="jwt", type="decision", source="src/jwt.py")
    score = router.score(record, ["jwt"], current_file="src/jwt.py", now=NOW)
    assert score == 1.0


def test_custom_weights_are_normalised(store):
    record = _record(content="jwt auth", type="note", age_days=15)
    default = ContextRouter(store).score(record, ["jwt", "billing"], now=NOW)
    doubled = ContextRouter(store, RoutingWeights(0.3, 0.3, 0.2, 0.4, 0.8)).score(
        record, ["jwt", "billing"], now=NOW
    )
    assert doubled == pytest.approx(default)
    assert default < 1.0


def test_all_zero_weights_leave_only_file_bonus(store):
    router = ContextRouter(store, RoutingWeights(0, 0, 0, 0, 0))
    record = _record(content="jwt", source="src/jwt.py")
    assert router.score(record, ["jwt"], now=NOW) == 0.0
    bonus = router.score(record, ["jwt"], current_file="src/jwt.py", now=NOW)
    assert bonus == pytest.approx(0.1 * 2 / 3)


def test_semantic_weight_falls_back_to_keywords(store):
    """Without embeddings, semantic weight is applied to keyword density."""
    router = ContextRouter(store)
    record = _record(content="jwt auth", type="decision", age_days=0)
    # recency 1, tags 1, type 1, keywords 1 -> everything maxes out.
    assert router.score(record, ["jwt"], now=NOW) == pytest.approx(1.0)
    # keywords 0: only recency, tags and type remain.
    assert router.score(record, ["billing"], now=NOW) == pytest.approx(0.40)


def test_semantic_similarity_used_when_available(store):
    router = ContextRouter(store)
    record = _record(content="unrelated", type="decision", embedding=[1.0, 0.0])
    aligned = router.score(record, ["jwt"], query_embedding=[1.0, 0.0], now=NOW)
    opposite = router.score(record, ["jwt"], query_embedding=[-1.0, 0.0], now=NOW)
    assert aligned == pytest.approx(0.40 + 0.40)
    assert opposite == pytest.approx(0.40)


def test_mismatched_embedding_ignored(store):
    router = ContextRouter(store)
    record = _record(content="jwt", type="decision", embedding=[1.0, 0.0, 0.0])
    assert router.score(record, ["jwt"], query_embedding=[1.0, 0.0], now=NOW) == pytest.approx(1.0)


def test_explain_reason(store):
    router = ContextRouter(store)
    record = _record(
        content="jwt tokens for auth in the api gateway",
        type="decision",
        tags=["auth"],
        age_days=3,
    )
    reason = router.explain(record, ["jwt", "tokens", "api", "gateway"], ["auth"], None, NOW)
    assert reason == "type:decision keywords:[jwt,tokens,api] tags:[auth] recent:3d"

    today = router.explain(_record(embedding=[1.0]), [], None, [1.0], NOW)
    assert today == "mode:hybrid type:note recent:today"

    old = router.explain(_record(age_days=40), [], None, None, NOW)
    assert old == "type:note"


# ------------------------------------------------------------------
# Routing against a store
# ------------------------------------------------------------------


def test_route_prefers_matching_decision(store):
    store.add("We use JWT tokens for authentication", type="decision", source="docs/adr.md")
    store.add("The database is PostgreSQL 15", type="fact", source="docs/db.md")
    store.add("Team standup is at 10am", type="note", source="notes")

    router = ContextRouter(store)
    results = router.route("implement JWT authentication")

    assert results[0].content == "We use JWT tokens for authentication"


def test_route_falls_back_to_recent_records(store):
    store.add("The database is PostgreSQL 15", type="fact", source="s")
    store.add("Team standup is at 10am", type="note", source="s")

    results = ContextRouter(store).route("something completely unrelated", limit=5)
    assert len(results) == 2


def test_route_limit_and_empty_store(store):
    router = ContextRouter(store)
    assert router.route("anything") == []
    store.add("record", type="note", source="s")
    assert router.route("record", limit=0) == []
    assert router.route_with_scores("record", limit=-1) == []


def test_route_respects_type_filter(store):
    store.add("cache decision: use redis", type="decision", source="s")
    store.add("cache note: redis is fast", type="note", source="s")
    results = ContextRouter(store).route("redis cache", type="note")
    assert [r.type for r in results] == ["note"]


def test_route_with_scores_sorted_and_bounded(store):
    for i in range(8):
        store.add(f"auth service detail {i}", type="fact", source="s", tags=["auth"])
    store.add("auth service decision", type="decision", source="s", tags=["auth"])

    scored = ContextRouter(store).route_with_scores("auth service", tags=["auth"], limit=4)
    assert len(scored) == 4
    assert scored[0].record.type == "decision"
    assert [c.score for c in scored] == sorted((c.score for c in scored), reverse=True)
    assert all(0.0 <= c.score <= 1.0 for c in scored)
    assert all("tags:[auth]" in c.reason for c in scored)


def test_current_file_bonus_breaks_ties(store):
    store.add("auth helper", type="code", source="src/auth/helpers.py")
    store.add("auth helper", type="code", source="docs/other.md")
    results = ContextRouter(store).route("auth helper", current_file="src/auth/jwt.py")
    assert results[0].source == "src/auth/helpers.py"


def test_hybrid_routing_with_provider(store, fake_provider):
    store.set_embedding_provider(fake_provider)
    store.add("database connection pool size", type="config", source="s")
    store.update_all_embeddings()

    scored = ContextRouter(store).route_with_scores("database connection pool")
    assert scored[0].reason.startswith("mode:hybrid")


def test_provider_failure_degrades_to_keywords(store):
    store.add("JWT tokens for authentication", type="decision", source="s")
    router = ContextRouter(store)
    router.set_embedding_provider(FailingEmbedding())

    scored = router.route_with_scores("jwt authentication")
    assert len(scored) == 1
    assert not scored[0].reason.startswith("mode:hybrid")


def test_route_authentication_scenario(store):
    store.add("We use JWT tokens for authentication", type="decision", source="s", tags=["auth"])
    store.add("Database uses PostgreSQL", type="decision", source="s", tags=["database"])
    store.add("Login endpoint validates email", type="fact", source="s", tags=["auth", "validation"])

    results = ContextRouter(store).route("implementing user authentication with JWT", limit=2)

    assert len(results) == 2
    assert "We use JWT tokens for authentication" in [r.content for r in results]


@pytest.mark.parametrize("type_weight", [0.0, 0.1, 0.5, 2.0])
def test_raising_type_weight_favours_decisions(store, type_weight):
    base = ContextRouter(store, RoutingWeights(type_priority=0.1))
    heavier = ContextRouter(store, RoutingWeights(type_priority=0.1 + type_weight))
    decision = _record(content="login flow", type="decision", age_days=10)
    note = _record(content="login flow", type="note", age_days=10)

    gap_before = base.score(decision, ["login"], now=NOW) - base.score(note, ["login"], now=NOW)
    gap_after = heavier.score(decision, ["login"], now=NOW) - heavier.score(note, ["login"], now=NOW)
    assert gap_after >= gap_before - 1e-9


def test_local_backend_failure_degrades_to_keywords(store):
    class _BrokenModel:
        def encode(self, texts, convert_to_numpy=True):
            raise RuntimeError("model crashed")

    provider = LocalEmbedding()
    provider._model = _BrokenModel()
    store.add("JWT tokens for authentication", type="decision", source="s")
    router = ContextRouter(store)
    router.set_embedding_provider(provider)

    scored = router.route_with_scores("jwt authentication")
    assert [c.record.content for c in scored] == ["JWT tokens for authentication"]
    assert not scored[0].reason.startswith("mode:hybrid")
