"""Pluggable embedding providers for cortexmem.

Each provider turns text into a fixed-length vector of floats.  Providers
are lazy: heavy ML dependencies are only imported when actually used, and
network backends only connect on the first request.

This module also holds the vector helpers shared by the store and the
router: :func:`cosine_similarity` and the little-endian float32
(de)serialisation used for the ``embedding`` column.
"""

from __future__ import annotations

import http.client
import importlib.util
import json
import logging
import math
import os
import socket
import struct
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from .errors import InvalidArgumentError, ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model dimensions
# ---------------------------------------------------------------------------

MODEL_DIMENSIONS: dict[str, int] = {
    "nomic-embed-text": 768,
    "bge-m3": 1024,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "all-MiniLM-L6-v2": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_TIMEOUT = 30.0

# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        Cosine similarity in ``[-1, 1]``.  Returns ``0.0`` if either vector
        has zero magnitude.

    Raises:
        InvalidArgumentError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise InvalidArgumentError(
            f"Vectors must be the same length (got {len(a)} and {len(b)})."
        )

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for ai, bi in zip(a, b):
        dot += ai * bi
        mag_a += ai * ai
        mag_b += bi * bi

    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0

    return dot / (math.sqrt(mag_a) * math.sqrt(mag_b))


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Pack a vector into little-endian float32 bytes (4 bytes per value).

    No header is written; the length is implied by the byte count.
    """
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    """Unpack bytes created by :func:`serialize_embedding`.

    Raises:
        InvalidArgumentError: If the byte length is not a multiple of 4.
    """
    if len(blob) % 4:
        raise InvalidArgumentError(
            f"Embedding blob length {len(blob)} is not a multiple of 4"
        )
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob))


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """Abstract base class for all embedding providers.

    Subclasses implement :meth:`embed_batch` and :meth:`is_available`.
    :meth:`embed` is defined in terms of :meth:`embed_batch`.

    Attributes:
        model: Identifier of the model producing the vectors.
    """

    model: str

    def __init__(self, model: str) -> None:
        self.model = model
        self._dimensions: int | None = MODEL_DIMENSIONS.get(model)

    @property
    def dimensions(self) -> int | None:
        """Vector length produced by :attr:`model`.

        Known models report a fixed value up front.  For other models the
        value is learned from the first successful response and stays
        ``None`` until then.
        """
        return self._dimensions

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for multiple texts.

        Args:
            texts: Input texts.

        Returns:
            One vector per input, in input order.  Empty input yields an
            empty list.

        Raises:
            ProviderError: If the backend fails.
            ProviderTimeoutError: If the backend does not answer in time.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the backend can be used right now."""

    def embed(self, text: str) -> list[float]:
        """Compute the embedding vector for a single piece of text."""
        vectors = self.embed_batch([text])
        if not vectors or not vectors[0]:
            raise ProviderError(f"{self!r} returned no embedding")
        return vectors[0]

    def _check_vectors(self, texts: list[str], vectors: Any) -> list[list[float]]:
        """Validate a backend response and learn the model dimension."""
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise ProviderError(
                f"{self!r} returned {got} embeddings for {len(texts)} inputs"
            )
        result = [[float(x) for x in v] for v in vectors]
        for vec in result:
            if self._dimensions is None:
                self._dimensions = len(vec)
            elif len(vec) != self._dimensions:
                raise ProviderError(
                    f"{self!r} returned a {len(vec)}-dimensional vector, "
                    f"expected {self._dimensions}"
                )
        return result


# ---------------------------------------------------------------------------
# HTTP helper
# ---------------------------------------------------------------------------


def _post_json(
    url: str,
    payload: dict[str, Any],
    timeout: float,
    label: str,
    headers: dict[str, str] | None = None,
) -> Any:
    """POST *payload* as JSON and return the decoded response body.

    Raises:
        ProviderTimeoutError: On socket timeout.
        ProviderError: On HTTP errors, connection errors, or bad JSON.
    """
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode()
    except urllib.error.HTTPError as exc:
        body = exc.read().decode(errors="replace") if exc.fp else ""
        raise ProviderError(f"{label} embedding failed ({exc.code}): {body}", status=exc.code) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise ProviderTimeoutError(f"{label} embedding timed out after {timeout}s") from exc
        raise ProviderError(f"Could not connect to {label} at {url}: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise ProviderTimeoutError(f"{label} embedding timed out after {timeout}s") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise ProviderError(f"{label} request failed: {exc}") from exc

    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{label} returned invalid JSON: {raw[:200]}") from exc


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaEmbedding(EmbeddingProvider):
    """Embedding provider using a locally-running Ollama server.

    Args:
        model: The Ollama model name.  Common choices include
            ``nomic-embed-text`` and ``bge-m3``.
        base_url: The Ollama API base URL.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        base_url: str = "http://localhost:11434",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(model)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def is_available(self) -> bool:
        """Check that Ollama is running and :attr:`model` is pulled."""
        try:
            with urllib.request.urlopen(f"{self._base_url}/api/tags", timeout=5) as resp:
                data = json.loads(resp.read().decode())
        except (OSError, ValueError) as exc:
            logger.debug("Ollama not available at %s: %s", self._base_url, exc)
            return False

        if not isinstance(data, dict):
            return False
        models = data.get("models") or []
        return any(
            m.get("name") == self.model or str(m.get("name", "")).startswith(f"{self.model}:")
            for m in models
        )

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings via Ollama's ``/api/embed`` endpoint."""
        if not texts:
            return []
        data = _post_json(
            f"{self._base_url}/api/embed",
            {"model": self.model, "input": texts},
            self._timeout,
            "Ollama",
        )
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not embeddings:
            raise ProviderError(f"Ollama returned an unexpected response: {data}")
        return self._check_vectors(texts, embeddings)

    def __repr__(self) -> str:
        return f"OllamaEmbedding(model={self.model!r}, base_url={self._base_url!r})"


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIEmbedding(EmbeddingProvider):
    """Embedding provider using the OpenAI Embeddings API.

    Args:
        api_key: OpenAI API key.  If ``None``, falls back to the
            ``OPENAI_API_KEY`` environment variable.
        model: The OpenAI embedding model name.
        base_url: API base URL (useful for Azure or compatible proxies).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(model)
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._api_key)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings via the OpenAI API, in input order."""
        if not texts:
            return []
        if not self._api_key:
            raise ProviderError(
                "An OpenAI API key is required.  Pass api_key=... or set OPENAI_API_KEY."
            )
        data = _post_json(
            f"{self._base_url}/embeddings",
            {"model": self.model, "input": texts},
            self._timeout,
            "OpenAI",
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            # Sort by index to guarantee ordering matches input.
            items = sorted(data["data"], key=lambda d: d["index"])
            embeddings = [item["embedding"] for item in items]
        except (KeyError, TypeError) as exc:
            raise ProviderError(f"OpenAI returned an unexpected response: {data}") from exc
        return self._check_vectors(texts, embeddings)

    def __repr__(self) -> str:
        return f"OpenAIEmbedding(model={self.model!r})"


# ---------------------------------------------------------------------------
# Local (sentence-transformers)
# ---------------------------------------------------------------------------


class LocalEmbedding(EmbeddingProvider):
    """Embedding provider using ``sentence-transformers`` in-process.

    The model is lazily loaded on first use so that import time and memory
    usage stay low until embeddings are actually needed.

    Args:
        model_name: The Hugging Face model identifier.
        device: PyTorch device string (``"cpu"``, ``"cuda"``, ...).
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str = "cpu") -> None:
        super().__init__(model_name)
        self._device = device
        self._model: Any = None  # lazy-loaded SentenceTransformer

    def is_available(self) -> bool:
        return importlib.util.find_spec("sentence_transformers") is not None

    def _load_model(self) -> None:
        """Import sentence-transformers and load the model."""
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ProviderError(
                "The 'sentence-transformers' package is required for local "
                "embeddings.  Install it with:  pip install 'cortexmem[local]'"
            ) from exc

        logger.info("Loading sentence-transformers model '%s' on %s ...", self.model, self._device)
        try:
            self._model = SentenceTransformer(self.model, device=self._device)
            dimensions = self._model.get_sentence_embedding_dimension()
        except Exception as exc:
            self._model = None
            raise ProviderError(f"Could not load model {self.model!r}: {exc}") from exc
        self._dimensions = dimensions or self._dimensions

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._model is None:
            self._load_model()
        try:
            vectors = [v.tolist() for v in self._model.encode(texts, convert_to_numpy=True)]
        except Exception as exc:
            raise ProviderError(f"{self!r} failed to encode {len(texts)} texts: {exc}") from exc
        return self._check_vectors(texts, vectors)

    def __repr__(self) -> str:
        return f"LocalEmbedding(model={self.model!r}, device={self._device!r})"


# ---------------------------------------------------------------------------
# Factory / fallback policy
# ---------------------------------------------------------------------------


def detect_embedding_provider(
    ollama_base_url: str = "http://localhost:11434",
    ollama_model: str = DEFAULT_EMBEDDING_MODEL,
    openai_api_key: str | None = None,
    openai_model: str = "text-embedding-3-small",
    timeout: float = DEFAULT_TIMEOUT,
) -> EmbeddingProvider | None:
    """Pick an embedding provider with local-first fallback.

    Tries Ollama first (local, private), falls back to OpenAI when an API
    key is supplied, otherwise returns ``None`` (keyword-only operation).
    """
    ollama = OllamaEmbedding(model=ollama_model, base_url=ollama_base_url, timeout=timeout)
    if ollama.is_available():
        logger.info("Using embedding provider %r", ollama)
        return ollama

    if openai_api_key:
        openai = OpenAIEmbedding(api_key=openai_api_key, model=openai_model, timeout=timeout)
        if openai.is_available():
            logger.info("Using embedding provider %r", openai)
            return openai

    logger.info("No embedding provider available; semantic search disabled")
    return None


_PROVIDER_ALIASES: dict[str, type[EmbeddingProvider]] = {
    "ollama": OllamaEmbedding,
    "openai": OpenAIEmbedding,
    "local": LocalEmbedding,
    "sentence-transformers": LocalEmbedding,
}


def create_embedding_provider(name: str, **kwargs: Any) -> EmbeddingProvider | None:
    """Create an embedding provider by name.

    Args:
        name: ``"ollama"``, ``"openai"``, ``"local"`` /
            ``"sentence-transformers"``, ``"auto"`` (see
            :func:`detect_embedding_provider`) or ``"none"``.
        **kwargs: Forwarded to the provider's constructor (or to
            :func:`detect_embedding_provider` for ``"auto"``).

    Returns:
        A provider instance, or ``None`` for ``"none"`` and for ``"auto"``
        when nothing is reachable.

    Raises:
        ValueError: If *name* is not a recognised provider.
    """
    key = name.lower().strip()
    if key in ("none", "noop"):
        return None
    if key == "auto":
        return detect_embedding_provider(**kwargs)
    cls = _PROVIDER_ALIASES.get(key)
    if cls is None:
        supported = ", ".join(sorted([*_PROVIDER_ALIASES, "auto", "none"]))
        raise ValueError(f"Unknown embedding provider {name!r}. Supported providers: {supported}")
    return cls(**kwargs)
