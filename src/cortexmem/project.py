"""Project identity detection for cortexmem.

Every record is tagged with a stable project identifier so that one shared
database can hold memories for many projects without them leaking into each
other.  The identifier is a short SHA-256 prefix derived from where the
project lives on disk.
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import os
import sys

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    tomllib = None

logger = logging.getLogger(__name__)

# Manifest files that mark a project root when no VCS root is found.
_MANIFEST_FILES = (
    "package.json",
    "pyproject.toml",
    "Cargo.toml",
    "go.mod",
    "pom.xml",
    "build.gradle",
    "setup.py",
    "composer.json",
    "Gemfile",
)

_ENV_ROOT = "CORTEX_PROJECT_ROOT"
_ID_LENGTH = 16


def _walk_up(start: str):
    """Yield *start* and each of its ancestors up to the filesystem root."""
    current = os.path.realpath(start)
    while True:
        yield current
        parent = os.path.dirname(current)
        if parent == current:
            return
        current = parent


def find_git_root(start: str) -> str | None:
    """Return the nearest ancestor of *start* containing ``.git``."""
    for directory in _walk_up(start):
        if os.path.exists(os.path.join(directory, ".git")):
            return directory
    return None


def find_manifest(start: str) -> str | None:
    """Return the path of the nearest manifest file at or above *start*."""
    for directory in _walk_up(start):
        for name in _MANIFEST_FILES:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                return candidate
    return None


def _env_root() -> str | None:
    env_root = os.environ.get(_ENV_ROOT)
    if env_root and os.path.isdir(env_root):
        return os.path.realpath(env_root)
    return None


def _normalize(path: str) -> str:
    return os.path.realpath(os.path.abspath(path)).lower().replace("\\", "/")


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:_ID_LENGTH]


def detect_project_root(cwd: str | None = None) -> str | None:
    """Detect the project root directory.

    Priority:
        1. ``CORTEX_PROJECT_ROOT`` environment variable.
        2. Nearest ancestor containing ``.git``.
        3. Directory of the nearest manifest file.

    Returns:
        An absolute directory path, or ``None`` if nothing matched.
    """
    env_root = _env_root()
    if env_root:
        return env_root
    start = cwd or os.getcwd()
    git_root = find_git_root(start)
    if git_root:
        return git_root
    manifest = find_manifest(start)
    if manifest:
        return os.path.dirname(manifest)
    return None


@functools.lru_cache(maxsize=128)
def _project_id_for(start: str, env_root: str | None) -> str:
    if env_root:
        return _hash(_normalize(env_root))

    git_root = find_git_root(start)
    if git_root:
        return _hash(_normalize(git_root))

    manifest = find_manifest(start)
    if manifest:
        return _hash(_normalize(manifest))

    return _hash(_normalize(start))


def get_project_id(cwd: str | None = None) -> str:
    """Return a stable 16-character hex identifier for the project at *cwd*.

    Resolution order: ``CORTEX_PROJECT_ROOT``, git root, nearest manifest
    file path, and finally *cwd* itself.  Paths are normalised (absolute,
    symlinks resolved, lower-cased, forward slashes) before hashing so the
    same location always yields the same id.

    Args:
        cwd: Directory to start from.  Defaults to the process CWD.
    """
    start = os.path.realpath(cwd or os.getcwd())
    return _project_id_for(start, _env_root())


def clear_project_cache() -> None:
    """Forget cached project ids (useful when the filesystem changes)."""
    _project_id_for.cache_clear()


def _manifest_name(path: str) -> str | None:
    """Best-effort project name from a manifest file."""
    basename = os.path.basename(path)
    try:
        if basename == "package.json":
            with open(path, encoding="utf-8") as fh:
                name = json.load(fh).get("name")
            return name if isinstance(name, str) and name else None
        if basename == "pyproject.toml" and tomllib is not None:
            with open(path, "rb") as fh:
                name = tomllib.load(fh).get("project", {}).get("name")
            return name if isinstance(name, str) and name else None
    except (OSError, ValueError) as exc:
        logger.debug("Could not read project name from %s: %s", path, exc)
    return None


def get_project_name(cwd: str | None = None) -> str:
    """Return a human-readable project name for display."""
    start = cwd or os.getcwd()
    manifest = find_manifest(start)
    if manifest:
        name = _manifest_name(manifest)
        if name:
            return name
    git_root = find_git_root(start)
    if git_root:
        return os.path.basename(git_root) or "unknown-project"
    return os.path.basename(os.path.realpath(start)) or "unknown-project"
