"""cortexmem -- local, per-project memory for AI coding assistants.

Stores short facts, decisions, code notes and config snippets in SQLite,
finds them again by keyword or meaning, picks the ones that matter for a
task, and packs several context sources into one token-bounded blob.

Quick start::

    from cortexmem import ContextRouter, MemoryStore

    store = MemoryStore()
    store.add("We use JWT tokens for authentication", type="decision",
              source="docs/adr/0003.md", tags=["auth"])
    records = ContextRouter(store).route("add JWT refresh to the login flow")

Records are isolated per project (derived from the git root or nearest
manifest file) and can be encrypted at rest with a password.  No external
server is needed.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import CortexConfig, load_config, open_store
from .crypto import decrypt, derive_key, encrypt
from .embeddings import (
    EmbeddingProvider,
    LocalEmbedding,
    OllamaEmbedding,
    OpenAIEmbedding,
    cosine_similarity,
    create_embedding_provider,
    deserialize_embedding,
    detect_embedding_provider,
    serialize_embedding,
)
from .errors import (
    CortexError,
    DecryptionError,
    InvalidArgumentError,
    ProviderError,
    ProviderTimeoutError,
    StorageError,
    ValidationError,
)
from .fuser import ContextFuser, ContextSource, FuseResult
from .guard import ContextGuard, GuardResult, available_filters
from .memory import MEMORY_TYPES, JsonValue, Record, is_valid_memory_type, validate_memory_type
from .project import detect_project_root, get_project_id, get_project_name
from .router import ContextRouter, RoutingWeights, ScoredCandidate
from .store import MemoryStore, SemanticMatch

__all__ = [
    # Store
    "MemoryStore",
    "SemanticMatch",
    # Records
    "Record",
    "JsonValue",
    "MEMORY_TYPES",
    "is_valid_memory_type",
    "validate_memory_type",
    # Routing / fusion / guard
    "ContextRouter",
    "RoutingWeights",
    "ScoredCandidate",
    "ContextFuser",
    "ContextSource",
    "FuseResult",
    "ContextGuard",
    "GuardResult",
    "available_filters",
    # Embeddings
    "EmbeddingProvider",
    "OllamaEmbedding",
    "OpenAIEmbedding",
    "LocalEmbedding",
    "create_embedding_provider",
    "detect_embedding_provider",
    "cosine_similarity",
    "serialize_embedding",
    "deserialize_embedding",
    # Crypto
    "encrypt",
    "decrypt",
    "derive_key",
    # Project identity
    "get_project_id",
    "get_project_name",
    "detect_project_root",
    # Config
    "CortexConfig",
    "load_config",
    "open_store",
    # Errors
    "CortexError",
    "ValidationError",
    "InvalidArgumentError",
    "DecryptionError",
    "ProviderError",
    "ProviderTimeoutError",
    "StorageError",
    # Version
    "__version__",
]
