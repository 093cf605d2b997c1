"""Context guard -- detect and redact sensitive data before it reaches a model.

Provides regex-based detection of credentials, secrets and personal data
in free text, with three handling modes:

* ``redact`` -- replace every match with a placeholder.
* ``block`` -- drop the whole text if anything matched.
* ``warn`` -- leave the text alone and report what was found.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REPLACEMENT = "[REDACTED]"

GUARD_MODES: tuple[str, ...] = ("redact", "block", "warn")

# ---------------------------------------------------------------------------
# Detection patterns
# ---------------------------------------------------------------------------

_FILTER_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "api_keys": (
        re.compile(
            r"(?:api[_-]?key|secret[_-]?key|access[_-]?key|auth[_-]?token|bearer|sk-|pk-|api-|key-)"
            r"[a-zA-Z0-9_-]{16,}",
            re.IGNORECASE,
        ),
        re.compile(r"(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9_]{36,}"),
        re.compile(r"AKIA[0-9A-Z]{16}"),
        re.compile(r"xox[bpsar]-[A-Za-z0-9-]{10,}"),
        re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}(?:\.[A-Za-z0-9_-]+)?"),
    ),
    "secrets": (
        re.compile(
            r"(?:password|passwd|pwd|secret|token|credential)[:\s=]+['\"]?"
            r"[a-zA-Z0-9!@#$%^&*()_+={}\[\]:;<>,.?/-]{8,}['\"]?",
            re.IGNORECASE,
        ),
        re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
    ),
    "pii": (re.compile(r"\b(?:\d{3}[-\s]?\d{2}[-\s]?\d{4}|[A-Z]{1,2}\d{6,9})\b"),),
    "emails": (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),),
    "urls_auth": (re.compile(r"https?://[^:\s]+:[^@\s]+@\S+"),),
    "credit_cards": (
        re.compile(
            r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}"
            r"|6(?:011|5[0-9]{2})[0-9]{12})\b"
        ),
    ),
    "phone_numbers": (
        re.compile(r"(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}"),
    ),
    "ip_addresses": (
        re.compile(
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
            r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
        ),
    ),
}


def available_filters() -> list[str]:
    """Return the names of every supported filter."""
    return list(_FILTER_PATTERNS)


def _check_filters(filters: Iterable[str]) -> list[str]:
    names = list(filters)
    unknown = [f for f in names if f not in _FILTER_PATTERNS]
    if unknown:
        raise ValidationError(
            f"Unknown guard filter(s): {', '.join(unknown)}. "
            f"Available: {', '.join(_FILTER_PATTERNS)}"
        )
    return names


@dataclass
class GuardResult:
    """Outcome of :meth:`ContextGuard.guard`.

    Attributes:
        content: The text after handling (redacted, emptied or unchanged).
        was_filtered: ``True`` if any filter matched.
        filter_details: ``{"type", "count"}`` for every filter that matched.
    """

    content: str
    was_filtered: bool
    filter_details: list[dict[str, object]] = field(default_factory=list)


class ContextGuard:
    """Filters sensitive data out of context text.

    Args:
        replacement: Placeholder used by ``redact`` mode.
    """

    def __init__(self, replacement: str = DEFAULT_REPLACEMENT) -> None:
        self.replacement = replacement

    available_filters = staticmethod(available_filters)

    def scan(self, content: str, filters: Sequence[str]) -> dict[str, int]:
        """Count matches per filter without modifying *content*."""
        counts: dict[str, int] = {}
        for name in _check_filters(filters):
            counts[name] = sum(len(p.findall(content)) for p in _FILTER_PATTERNS[name])
        return counts

    def has_sensitive_data(self, content: str, filters: Sequence[str]) -> bool:
        return any(self.scan(content, filters).values())

    def guard(
        self,
        content: str,
        filters: Sequence[str],
        mode: str = "redact",
        replacement: str | None = None,
    ) -> GuardResult:
        """Apply *filters* to *content* in the given *mode*.

        Args:
            content: Text to inspect.
            filters: Filter names, see :func:`available_filters`.
            mode: ``"redact"``, ``"block"`` or ``"warn"``.
            replacement: Overrides the guard's placeholder for this call.

        Raises:
            ValidationError: On an unknown filter or mode.
        """
        if mode not in GUARD_MODES:
            raise ValidationError(
                f"Invalid guard mode: {mode!r}. Must be one of: {', '.join(GUARD_MODES)}"
            )
        names = _check_filters(filters)

        if mode in ("block", "warn"):
            details = [
                {"type": name, "count": count}
                for name, count in self.scan(content, names).items()
                if count
            ]
            if mode == "block" and details:
                logger.debug("Guard blocked content: %s", details)
                return GuardResult("", True, details)
            return GuardResult(content, bool(details), details)

        placeholder = self.replacement if replacement is None else replacement
        result = content
        details = []
        for name in names:
            total = 0
            for pattern in _FILTER_PATTERNS[name]:
                # A lambda keeps backslashes in the placeholder literal.
                result, n = pattern.subn(lambda _m: placeholder, result)
                total += n
            if total:
                details.append({"type": name, "count": total})
        if details:
            logger.debug("Guard redacted content: %s", details)
        return GuardResult(result, bool(details), details)

    def guard_batch(
        self,
        contents: Iterable[str],
        filters: Sequence[str],
        mode: str = "redact",
        replacement: str | None = None,
    ) -> list[GuardResult]:
        """Apply :meth:`guard` to every item of *contents*."""
        return [self.guard(c, filters, mode=mode, replacement=replacement) for c in contents]
