"""SQLite storage backend for cortexmem.

Provides durable, project-scoped persistence of :class:`Record` objects in
a local SQLite database with an FTS5 keyword index, optional vector search
and optional at-rest encryption of content and metadata.  No external
server is required.
"""

from __future__ import annotations

import builtins
import contextlib
import json
import logging
import os
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple

from .crypto import decrypt, encrypt, looks_encrypted
from .embeddings import (
    EmbeddingProvider,
    cosine_similarity,
    deserialize_embedding,
    serialize_embedding,
)
from .errors import DecryptionError, ProviderError, StorageError, ValidationError
from .memory import (
    JsonValue,
    Record,
    validate_memory_type,
    validate_metadata,
    validate_tags,
    validate_text_field,
)
from .migrations import ensure_fts, ensure_schema
from .project import get_project_id

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_DEFAULT_DIR = os.path.join(os.path.expanduser("~"), ".cortex")
_DEFAULT_DB = os.path.join(_DEFAULT_DIR, "memories.db")

_IN_MEMORY = ":memory:"

# Sentinel object to distinguish "not provided" from ``None`` in update calls.
_UNSET: Any = object()

# Similarity reported by search_semantic when no provider is attached.
NEUTRAL_SIMILARITY = 0.5

_EMBED_BATCH_SIZE = 10


class SemanticMatch(NamedTuple):
    """A record paired with its cosine similarity to a query."""

    record: Record
    similarity: float


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _fts_query(terms: list[str]) -> str:
    """Quote every term as an FTS5 string literal and AND them together."""
    return " ".join('"' + t.replace('"', '""') + '"' for t in terms)


class MemoryStore:
    """Project-scoped SQLite record store.

    Each instance manages a single SQLite database file and a single
    project scope.  The class uses per-thread connections to satisfy
    SQLite's threading constraints.

    Args:
        path: Path to the SQLite database file.  Parent directories are
            created automatically.  Defaults to ``~/.cortex/memories.db``.
            ``":memory:"`` opens a private in-memory database (one per
            thread).
        project_id: Project scope for every operation.  Auto-detected from
            the working directory when omitted.  Ignored in global mode.
        global_mode: Operate across all projects.
        password: Encrypt ``content`` and ``metadata`` at rest with this
            passphrase.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        path: str | os.PathLike[str] | None = None,
        *,
        project_id: str | None = None,
        global_mode: bool = False,
        password: str | None = None,
    ) -> None:
        raw_path = str(path) if path is not None else _DEFAULT_DB
        if raw_path == _IN_MEMORY:
            self._path = raw_path
        else:
            self._path = os.path.realpath(os.path.expanduser(raw_path))
            parent = os.path.dirname(self._path)
            if parent:
                os.makedirs(parent, mode=0o700, exist_ok=True)
                with contextlib.suppress(OSError):
                    os.chmod(parent, 0o700)

        self._global_mode = global_mode
        self._project_id: str | None = None if global_mode else (project_id or get_project_id())
        self._password = password or None
        self._provider: EmbeddingProvider | None = None
        self._local = threading.local()

        try:
            conn = self._get_connection()
            self._schema_version = ensure_schema(conn)
            self._fts_available = ensure_fts(conn)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open database {self._path}: {exc}") from exc

        logger.info(
            "Opened memory store at %s (project=%s, encrypted=%s, fts=%s)",
            self._path,
            "global" if global_mode else self._project_id,
            self.encrypted,
            self._fts_available,
        )

    def close(self) -> None:
        """Close the database connection for the current thread."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        scope = "global" if self._global_mode else self._project_id
        return f"MemoryStore(path={self._path!r}, project={scope!r})"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def path(self) -> str:
        return self._path

    @property
    def project_id(self) -> str | None:
        """The project scope, or ``None`` in global mode."""
        return self._project_id

    @property
    def global_mode(self) -> bool:
        return self._global_mode

    @property
    def encrypted(self) -> bool:
        """Whether content and metadata are encrypted at rest."""
        return self._password is not None

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def embedding_provider(self) -> EmbeddingProvider | None:
        return self._provider

    def set_embedding_provider(self, provider: EmbeddingProvider | None) -> None:
        """Attach (or with ``None``, detach) an embedding provider.

        The store only borrows the provider; it never closes it.
        """
        self._provider = provider
        if provider is not None:
            logger.info("Embedding provider attached: %r", provider)

    # ------------------------------------------------------------------
    # Connection management (per-thread)
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return (or create) a SQLite connection for the current thread."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._path)
            if self._path != _IN_MEMORY:
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Yield a cursor, commit on success and roll back on any error.

        :class:`sqlite3.Error` is re-raised as :class:`StorageError`.
        """
        conn = self._get_connection()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"SQLite error on {self._path}: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Scoping and encryption helpers
    # ------------------------------------------------------------------

    def _scope(self, conditions: builtins.list[str], params: builtins.list[Any]) -> None:
        """Append the project filter unless running in global mode."""
        if not self._global_mode:
            conditions.append("project_id = ?")
            params.append(self._project_id)

    def _resolve_project_id(self, project_id: str | None) -> str | None:
        if self._global_mode:
            return project_id
        if project_id is not None and project_id != self._project_id:
            raise ValidationError(
                "An explicit project_id is only allowed in global mode "
                f"(store is scoped to {self._project_id})"
            )
        return self._project_id

    def _seal(self, text: str) -> str:
        return encrypt(text, self._password) if self._password else text

    def _seal_metadata(self, metadata: dict[str, JsonValue]) -> str | None:
        if not metadata:
            return None
        return self._seal(json.dumps(metadata, ensure_ascii=False))

    def _open(self, value: str) -> str:
        """Decrypt *value*, passing legacy plaintext rows through unchanged."""
        if self._password and looks_encrypted(value):
            return decrypt(value, self._password)
        return value

    def _row_to_record(self, row: sqlite3.Row) -> Record:
        content = row["content"]
        meta_raw = row["metadata"]
        undecryptable = False
        if self._password:
            try:
                content = self._open(content)
                meta_raw = self._open(meta_raw) if meta_raw else meta_raw
            except DecryptionError as exc:
                logger.warning("Could not decrypt memory %s: %s", row["id"], exc)
                undecryptable = True
                content = row["content"]
                meta_raw = None
        elif looks_encrypted(content):
            # Written with a password this store was not given.
            undecryptable = True

        metadata: dict[str, JsonValue] = {}
        if meta_raw:
            try:
                metadata = json.loads(meta_raw)
            except ValueError:
                logger.warning("Memory %s has unreadable metadata", row["id"])
                undecryptable = True

        blob = row["embedding"]
        return Record(
            id=row["id"],
            project_id=row["project_id"],
            content=content,
            type=row["type"],
            source=row["source"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            metadata=metadata,
            embedding=deserialize_embedding(blob) if blob else None,
            embedding_model=row["embedding_model"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            encrypted=undecryptable,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(
        self,
        content: str,
        type: str,
        source: str,
        tags: builtins.list[str] | None = None,
        metadata: dict[str, JsonValue] | None = None,
        project_id: str | None = None,
    ) -> int:
        """Persist a new record and return its id.

        The keyword index is updated in the same transaction, so the record
        is immediately searchable.

        Args:
            content: Non-blank text.
            type: One of :data:`~cortexmem.memory.MEMORY_TYPES`.
            source: Non-blank provenance string.
            tags: Ordered tags.
            metadata: JSON-serialisable, string-keyed map.
            project_id: Explicit owner.  Only honoured in global mode.

        Returns:
            The newly assigned integer id.

        Raises:
            ValidationError: If any field is invalid.  Nothing is written.
        """
        validate_text_field("content", content)
        validate_text_field("source", source)
        validate_memory_type(type)
        tags = validate_tags(tags)
        metadata = validate_metadata(metadata)
        owner = self._resolve_project_id(project_id)

        stored_content = self._seal(content)
        stored_metadata = self._seal_metadata(metadata)
        now = _iso(_now())

        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO memories
                    (project_id, content, type, source, tags, metadata,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner,
                    stored_content,
                    type,
                    source,
                    json.dumps(tags, ensure_ascii=False) if tags else None,
                    stored_metadata,
                    now,
                    now,
                ),
            )
            new_id = cur.lastrowid
        logger.debug("Added memory %s (type=%s, project=%s)", new_id, type, owner)
        return int(new_id)

    def get(self, memory_id: int) -> Record | None:
        """Return the record with *memory_id*, or ``None`` if absent or out of scope."""
        conditions = ["id = ?"]
        params: builtins.list[Any] = [memory_id]
        self._scope(conditions, params)
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM memories WHERE {' AND '.join(conditions)}", params)
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def list(
        self,
        type: str | None = None,
        tag: str | None = None,
        limit: int | None = None,
    ) -> builtins.list[Record]:
        """List records, newest first.

        Args:
            type: Only records of this type.
            tag: Only records whose JSON tag array contains this substring.
            limit: Maximum number of records.  ``None`` means unlimited.

        Returns:
            Records ordered by ``created_at`` descending.
        """
        if limit is not None and limit <= 0:
            return []
        conditions: builtins.list[str] = []
        params: builtins.list[Any] = []
        self._scope(conditions, params)
        if type is not None:
            conditions.append("type = ?")
            params.append(validate_memory_type(type))
        if tag:
            conditions.append("tags LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(tag))
        return self._select(conditions, params, limit)

    def _select(
        self,
        conditions: builtins.list[str],
        params: builtins.list[Any],
        limit: int | None,
    ) -> builtins.list[Record]:
        sql = "SELECT * FROM memories"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def update(
        self,
        memory_id: int,
        *,
        content: str = _UNSET,
        type: str = _UNSET,
        source: str = _UNSET,
        tags: builtins.list[str] | None = _UNSET,
        metadata: dict[str, JsonValue] | None = _UNSET,
        project_id: str | None = _UNSET,
    ) -> bool:
        """Update the supplied fields of an existing record.

        Only the keyword arguments that are passed change; everything else
        is left alone.  ``updated_at`` always advances.

        Returns:
            ``True`` if the record was updated, ``False`` if no field was
            supplied or *memory_id* is not in scope.  A missing record is
            reported before any field is validated.

        Raises:
            ValidationError: If a supplied field of an existing record is
                invalid.  Nothing is written.
        """
        conditions = ["id = ?"]
        params: builtins.list[Any] = [memory_id]
        self._scope(conditions, params)
        where = " AND ".join(conditions)

        with self._cursor() as cur:
            cur.execute(f"SELECT 1 FROM memories WHERE {where}", params)
            if cur.fetchone() is None:
                return False

        assignments: builtins.list[str] = []
        values: builtins.list[Any] = []

        if content is not _UNSET:
            validate_text_field("content", content)
            assignments.append("content = ?")
            values.append(self._seal(content))
        if type is not _UNSET:
            validate_memory_type(type)
            assignments.append("type = ?")
            values.append(type)
        if source is not _UNSET:
            validate_text_field("source", source)
            assignments.append("source = ?")
            values.append(source)
        if tags is not _UNSET:
            checked = validate_tags(tags)
            assignments.append("tags = ?")
            values.append(json.dumps(checked, ensure_ascii=False) if checked else None)
        if metadata is not _UNSET:
            assignments.append("metadata = ?")
            values.append(self._seal_metadata(validate_metadata(metadata)))
        if project_id is not _UNSET:
            assignments.append("project_id = ?")
            values.append(self._resolve_project_id(project_id))

        if not assignments:
            return False

        with self._cursor() as cur:
            cur.execute(f"SELECT updated_at FROM memories WHERE {where}", params)
            row = cur.fetchone()
            if row is None:
                return False
            now = _now()
            previous = _parse_ts(row["updated_at"])
            if previous is not None and now <= previous:
                now = previous + timedelta(microseconds=1)
            assignments.append("updated_at = ?")
            values.append(_iso(now))
            cur.execute(
                f"UPDATE memories SET {', '.join(assignments)} WHERE {where}",
                [*values, *params],
            )
            updated = cur.rowcount > 0
        logger.debug("Updated memory %s: %s", memory_id, updated)
        return updated

    def delete(self, memory_id: int) -> bool:
        """Delete a record.  Returns ``False`` if it was absent or out of scope."""
        conditions = ["id = ?"]
        params: builtins.list[Any] = [memory_id]
        self._scope(conditions, params)
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM memories WHERE {' AND '.join(conditions)}", params)
            return cur.rowcount > 0

    def clear(self) -> int:
        """Delete every record in scope and return how many were removed."""
        conditions: builtins.list[str] = []
        params: builtins.list[Any] = []
        self._scope(conditions, params)
        sql = "DELETE FROM memories"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        with self._cursor() as cur:
            cur.execute(sql, params)
            removed = cur.rowcount
        logger.info("Cleared %d memories (project=%s)", removed, self._project_id or "global")
        return removed

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Return ``{"total", "by_type", "project_id"}`` for the current scope.

        ``project_id`` is omitted in global mode.
        """
        conditions: builtins.list[str] = []
        params: builtins.list[Any] = []
        self._scope(conditions, params)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT type, COUNT(*) AS n FROM memories{where} GROUP BY type ORDER BY type",
                params,
            )
            by_type = {row["type"]: row["n"] for row in cur.fetchall()}

        result: dict[str, Any] = {"total": sum(by_type.values()), "by_type": by_type}
        if not self._global_mode:
            result["project_id"] = self._project_id
        return result

    def get_all_projects(self) -> builtins.list[dict[str, Any]]:
        """Return ``{"project_id", "count"}`` for every project in the database.

        This ignores the store's own project scope.
        """
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT project_id, COUNT(*) AS n FROM memories
                WHERE project_id IS NOT NULL
                GROUP BY project_id
                ORDER BY n DESC, project_id
                """
            )
            return [{"project_id": row["project_id"], "count": row["n"]} for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Keyword search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        type: str | None = None,
        limit: int | None = None,
    ) -> builtins.list[Record]:
        """Keyword search over record content.

        Matching is case-insensitive and every whitespace-separated term
        must occur.  An empty query behaves like :meth:`list`.  On an
        encrypted store the in-scope records are decrypted in memory and
        matched by substring against the whole query instead.

        Args:
            query: Search text.
            type: Only records of this type.
            limit: Maximum number of results.

        Returns:
            Matching records, newest first.
        """
        if not query or not query.strip():
            return self.list(type=type, limit=limit)
        if limit is not None and limit <= 0:
            return []

        if self._password:
            logger.debug("Search strategy: decrypt-and-scan")
            needle = query.strip().lower()
            matches = [
                r for r in self.list(type=type)
                if not r.encrypted and needle in r.content.lower()
            ]
            return matches if limit is None else matches[:limit]

        terms = [t for t in query.lower().split() if any(ch.isalnum() for ch in t)]
        if not terms:
            return []

        conditions: builtins.list[str] = []
        params: builtins.list[Any] = []
        if self._fts_available:
            logger.debug("Search strategy: fts5 %r", terms)
            conditions.append(
                "id IN (SELECT rowid FROM memories_fts WHERE memories_fts MATCH ?)"
            )
            params.append(_fts_query(terms))
        else:
            logger.debug("Search strategy: like %r", terms)
            for term in terms:
                conditions.append("content LIKE ? ESCAPE '\\'")
                params.append(_like_pattern(term))
        self._scope(conditions, params)
        if type is not None:
            conditions.append("type = ?")
            params.append(validate_memory_type(type))
        return self._select(conditions, params, limit)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def _require_provider(self) -> EmbeddingProvider:
        if self._provider is None:
            raise ProviderError("No embedding provider configured")
        return self._provider

    @staticmethod
    def _check_dimensions(provider: EmbeddingProvider, vector: builtins.list[float]) -> None:
        expected = provider.dimensions
        if expected is not None and len(vector) != expected:
            raise ProviderError(
                f"{provider!r} produced a {len(vector)}-dimensional vector, "
                f"expected {expected}"
            )

    def update_embedding(self, memory_id: int) -> bool:
        """Compute and store the embedding for one record.

        Returns:
            ``False`` if *memory_id* is not in scope.

        Raises:
            ProviderError: If no provider is attached or the provider fails.
            DecryptionError: If the record's content cannot be decrypted.
        """
        provider = self._require_provider()
        record = self.get(memory_id)
        if record is None:
            return False
        if record.encrypted:
            raise DecryptionError(f"Memory {memory_id} could not be decrypted for embedding")

        vector = provider.embed(record.content)
        self._check_dimensions(provider, vector)

        conditions = ["id = ?"]
        params: builtins.list[Any] = [memory_id]
        self._scope(conditions, params)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE memories SET embedding = ?, embedding_model = ? "
                f"WHERE {' AND '.join(conditions)}",
                [serialize_embedding(vector), provider.model, *params],
            )
            return cur.rowcount > 0

    def update_all_embeddings(self) -> int:
        """Embed every in-scope record that has no embedding yet.

        Records are sent to the provider in batches of 10 and each batch is
        committed on its own, so an interrupted run keeps its progress.
        Records that fail to decrypt are skipped.

        Returns:
            The number of records that received an embedding.

        Raises:
            ProviderError: If no provider is attached or a batch fails.
        """
        provider = self._require_provider()

        conditions = ["embedding IS NULL"]
        params: builtins.list[Any] = []
        self._scope(conditions, params)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, content FROM memories WHERE {' AND '.join(conditions)} ORDER BY id",
                params,
            )
            rows = cur.fetchall()

        updated = 0
        for start in range(0, len(rows), _EMBED_BATCH_SIZE):
            ids: builtins.list[int] = []
            texts: builtins.list[str] = []
            for row in rows[start : start + _EMBED_BATCH_SIZE]:
                try:
                    text = self._open(row["content"])
                except DecryptionError as exc:
                    logger.warning("Skipping memory %s during embedding: %s", row["id"], exc)
                    continue
                ids.append(row["id"])
                texts.append(text)
            if not texts:
                continue

            vectors = provider.embed_batch(texts)
            if len(vectors) != len(texts):
                raise ProviderError(
                    f"{provider!r} returned {len(vectors)} embeddings for {len(texts)} inputs"
                )
            for vector in vectors:
                self._check_dimensions(provider, vector)

            with self._cursor() as cur:
                cur.executemany(
                    "UPDATE memories SET embedding = ?, embedding_model = ? WHERE id = ?",
                    [
                        (serialize_embedding(vec), provider.model, mid)
                        for mid, vec in zip(ids, vectors)
                    ],
                )
            updated += len(ids)

        logger.info("Updated embeddings for %d memories", updated)
        return updated

    def search_semantic(
        self,
        query: str,
        type: str | None = None,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> builtins.list[SemanticMatch]:
        """Rank in-scope records by cosine similarity to *query*.

        Without a provider (or when the provider fails) this degrades to
        :meth:`search`, reporting :data:`NEUTRAL_SIMILARITY` for every hit.

        Args:
            query: Natural-language query.
            type: Only records of this type.
            limit: Maximum number of results.
            min_score: Drop matches below this similarity.

        Returns:
            Matches sorted by similarity, highest first.
        """
        if self._provider is None:
            return self._keyword_matches(query, type, limit)
        try:
            query_vec = self._provider.embed(query)
        except ProviderError as exc:
            logger.warning("Embedding provider failed, using keyword search: %s", exc)
            return self._keyword_matches(query, type, limit)

        if limit is not None and limit <= 0:
            return []

        conditions = ["embedding IS NOT NULL"]
        params: builtins.list[Any] = []
        self._scope(conditions, params)
        if type is not None:
            conditions.append("type = ?")
            params.append(validate_memory_type(type))
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM memories WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at DESC, id DESC",
                params,
            )
            rows = cur.fetchall()

        matches: builtins.list[SemanticMatch] = []
        for row in rows:
            vector = deserialize_embedding(row["embedding"])
            if len(vector) != len(query_vec):
                logger.debug(
                    "Skipping memory %s: %d-dim embedding vs %d-dim query",
                    row["id"],
                    len(vector),
                    len(query_vec),
                )
                continue
            similarity = cosine_similarity(query_vec, vector)
            if min_score is not None and similarity < min_score:
                continue
            matches.append(SemanticMatch(self._row_to_record(row), similarity))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches if limit is None else matches[:limit]

    def _keyword_matches(
        self, query: str, type: str | None, limit: int | None
    ) -> builtins.list[SemanticMatch]:
        return [
            SemanticMatch(record, NEUTRAL_SIMILARITY)
            for record in self.search(query, type=type, limit=limit)
        ]
