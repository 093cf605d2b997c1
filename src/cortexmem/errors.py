"""Exception hierarchy for cortexmem.

Every error raised deliberately by the library derives from
:class:`CortexError`, so callers can catch the whole family at once or
pick out the cases they care about.
"""

from __future__ import annotations


class CortexError(Exception):
    """Base class for all cortexmem errors."""


class ValidationError(CortexError, ValueError):
    """Bad input: empty content/source, unknown type, malformed update.

    Raised before any persistence side effect takes place.
    """


class InvalidArgumentError(CortexError, ValueError):
    """A numeric helper was called with incompatible arguments."""


class DecryptionError(CortexError):
    """A token could not be decrypted (wrong password, tampering, bad format)."""


class ProviderError(CortexError):
    """An embedding backend was unreachable, rejected the request, or
    returned something unusable.

    Attributes:
        status: HTTP status code when the backend answered with an error
            response, otherwise ``None``.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderTimeoutError(ProviderError):
    """An embedding backend did not answer within the configured timeout."""


class StorageError(CortexError):
    """The underlying SQLite engine failed.

    The original :class:`sqlite3.Error` is preserved as ``__cause__``.
    """
