"""Shared fixtures and fake embedding providers for the cortexmem tests."""

from __future__ import annotations

import pytest

from cortexmem.embeddings import EmbeddingProvider
from cortexmem.errors import ProviderError
from cortexmem.store import MemoryStore

# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeEmbedding(EmbeddingProvider):
    """Deterministic bag-of-words embedding.

    Every word lands in a bucket chosen by the sum of its code points, so
    texts that share words point in similar directions.
    """

    def __init__(self, dims: int = 16, model: str = "fake-embed") -> None:
        super().__init__(model)
        self._dimensions = dims
        self.calls: list[list[str]] = []

    def is_available(self) -> bool:
        return True

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vec = [0.0] * self._dimensions
            for word in text.lower().split():
                vec[sum(map(ord, word)) % self._dimensions] += 1.0
            vectors.append(vec)
        return vectors


class FailingEmbedding(EmbeddingProvider):
    """Provider whose every request fails."""

    def __init__(self) -> None:
        super().__init__("broken-embed")
        self._dimensions = 16

    def is_available(self) -> bool:
        return False

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise ProviderError("backend unreachable")


class WrongSizeEmbedding(FakeEmbedding):
    """Declares one size but returns another."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [[1.0, 0.0, 0.0] for _ in texts]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_provider():
    return FakeEmbedding()


@pytest.fixture()
def store(tmp_path):
    """A store scoped to project ``proj-a`` in a temporary database."""
    s = MemoryStore(tmp_path / "memories.db", project_id="proj-a")
    yield s
    s.close()
