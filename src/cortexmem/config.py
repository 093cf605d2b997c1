"""Configuration for cortexmem.

A single :class:`CortexConfig` dataclass gathers everything needed to open
a store: database location, project scope, encryption password and the
embedding backend.  Values come from compiled defaults, then the
environment, then an optional JSON file.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from typing import Any

from .embeddings import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_TIMEOUT,
    EmbeddingProvider,
    create_embedding_provider,
)
from .errors import ValidationError
from .store import _DEFAULT_DB, _DEFAULT_DIR, MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(_DEFAULT_DIR, "config.json")

EMBEDDING_CHOICES: tuple[str, ...] = ("auto", "ollama", "openai", "local", "none")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})

# Environment variable -> field name.
_ENV_FIELDS: dict[str, str] = {
    "CORTEX_DB_PATH": "db_path",
    "CORTEX_GLOBAL": "global_mode",
    "CORTEX_PASSWORD": "password",
    "CORTEX_PROJECT_ID": "project_id",
    "CORTEX_EMBEDDING": "embedding",
    "OLLAMA_BASE_URL": "ollama_base_url",
    "CORTEX_OLLAMA_MODEL": "ollama_model",
    "OPENAI_API_KEY": "openai_api_key",
    "CORTEX_OPENAI_MODEL": "openai_model",
    "CORTEX_EMBEDDING_TIMEOUT": "embedding_timeout",
    "CORTEX_LOG_LEVEL": "log_level",
}


@dataclass
class CortexConfig:
    """Settings used to open a :class:`~cortexmem.store.MemoryStore`.

    Attributes:
        db_path: SQLite database file.
        global_mode: Operate across all projects.
        password: Encrypt content at rest when set.
        project_id: Explicit project scope; ``None`` auto-detects.
        embedding: ``"auto"``, ``"ollama"``, ``"openai"``, ``"local"`` or
            ``"none"``.
        ollama_base_url: Ollama server URL.
        ollama_model: Ollama embedding model.
        openai_api_key: Key for the OpenAI backend.
        openai_model: OpenAI embedding model.
        embedding_timeout: Per-request timeout in seconds.
        log_level: Level for the ``cortexmem`` logger (CLI only).
    """

    db_path: str = _DEFAULT_DB
    global_mode: bool = False
    password: str | None = None
    project_id: str | None = None
    embedding: str = "auto"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = DEFAULT_EMBEDDING_MODEL
    openai_api_key: str | None = None
    openai_model: str = "text-embedding-3-small"
    embedding_timeout: float = DEFAULT_TIMEOUT
    log_level: str = "WARNING"

    def validate(self) -> list[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: list[str] = []
        if not isinstance(self.db_path, str) or not self.db_path.strip():
            errors.append("db_path: must be a non-empty string")
        if not isinstance(self.global_mode, bool):
            errors.append(f"global_mode: expected bool, got {type(self.global_mode).__name__}")
        if self.embedding not in EMBEDDING_CHOICES:
            errors.append(
                f"embedding: {self.embedding!r} not one of {', '.join(EMBEDDING_CHOICES)}"
            )
        if (
            isinstance(self.embedding_timeout, bool)
            or not isinstance(self.embedding_timeout, (int, float))
            or self.embedding_timeout <= 0
        ):
            errors.append(f"embedding_timeout: {self.embedding_timeout!r} must be > 0")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"log_level: {self.log_level!r} not one of {', '.join(LOG_LEVELS)}")
        for name in ("password", "project_id", "openai_api_key"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                errors.append(f"{name}: expected str, got {type(value).__name__}")
        return errors

    def check(self) -> CortexConfig:
        """Raise :class:`ValidationError` if :meth:`validate` reports problems."""
        errors = self.validate()
        if errors:
            raise ValidationError(f"Config validation failed: {'; '.join(errors)}")
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for secret in ("password", "openai_api_key"):
            if data[secret]:
                data[secret] = "***"
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base: CortexConfig | None = None) -> CortexConfig:
        """Overlay *data* onto *base* (or the defaults).  Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = asdict(base) if base is not None else {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r", key)
                continue
            values[key] = value
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CortexConfig:
        """Build a config from ``CORTEX_*`` (and provider) environment variables."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for var, name in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            if name == "global_mode":
                values[name] = raw.strip().lower() in _TRUE_VALUES
            elif name == "embedding_timeout":
                try:
                    values[name] = float(raw)
                except ValueError as exc:
                    raise ValidationError(f"{var}: {raw!r} is not a number") from exc
            elif name in ("embedding", "log_level"):
                values[name] = raw.strip().lower() if name == "embedding" else raw.strip().upper()
            else:
                values[name] = raw
        return cls(**values).check()

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def provider_kwargs(self) -> dict[str, Any]:
        """Constructor arguments for the configured embedding backend."""
        if self.embedding == "auto":
            return {
                "ollama_base_url": self.ollama_base_url,
                "ollama_model": self.ollama_model,
                "openai_api_key": self.openai_api_key,
                "openai_model": self.openai_model,
                "timeout": self.embedding_timeout,
            }
        if self.embedding == "ollama":
            return {
                "model": self.ollama_model,
                "base_url": self.ollama_base_url,
                "timeout": self.embedding_timeout,
            }
        if self.embedding == "openai":
            return {
                "api_key": self.openai_api_key,
                "model": self.openai_model,
                "timeout": self.embedding_timeout,
            }
        return {}


def load_config(
    path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> CortexConfig:
    """Load config from the environment, overlaid with a JSON file.

    Args:
        path: Path to a JSON object of :class:`CortexConfig` fields.
            Defaults to ``CORTEX_CONFIG`` or ``~/.cortex/config.json``.
            A missing file is ignored.
        environ: Environment mapping, defaults to :data:`os.environ`.

    Returns:
        The merged, validated config.

    Raises:
        ValidationError: If a value is out of range.
    """
    env = os.environ if environ is None else environ
    cfg = CortexConfig.from_env(env)
    config_path = os.fspath(path) if path is not None else env.get("CORTEX_CONFIG", DEFAULT_CONFIG_PATH)

    try:
        with open(os.path.expanduser(config_path), encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return cfg
    except (OSError, ValueError) as exc:
        logger.warning("Could not read config file %s: %s", config_path, exc)
        return cfg

    if not isinstance(data, dict):
        logger.warning("Config file %s must hold a JSON object; ignoring it", config_path)
        return cfg
    return CortexConfig.from_dict(data, base=cfg).check()


def build_provider(config: CortexConfig) -> EmbeddingProvider | None:
    """Create the configured embedding provider, or ``None`` if unusable."""
    provider = create_embedding_provider(config.embedding, **config.provider_kwargs())
    if provider is None or config.embedding == "auto":
        return provider
    if not provider.is_available():
        logger.warning("Embedding provider %r is not available; semantic search disabled", provider)
        return None
    return provider


def open_store(config: CortexConfig | None = None) -> MemoryStore:
    """Open a :class:`MemoryStore` described by *config* and attach its provider."""
    cfg = (config or load_config()).check()
    store = MemoryStore(
        cfg.db_path,
        project_id=cfg.project_id,
        global_mode=cfg.global_mode,
        password=cfg.password,
    )
    provider = build_provider(cfg)
    if provider is not None:
        store.set_embedding_provider(provider)
    return store
