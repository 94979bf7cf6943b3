"""Sanitization helpers for error summaries crossing the engine boundary."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_SUMMARY_CHARS = 500

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b[a-z0-9_]*_?(api_)?(key|token|secret|password)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_summary(text: str, *, max_chars: int = _MAX_SUMMARY_CHARS) -> str:
    """Redact obvious secrets/PII, keep the first line, and clamp size."""

    compact = text.strip()
    if not compact:
        return ""

    first_line = compact.splitlines()[0].strip()
    redacted = first_line
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[: max_chars - 3] + "..."


def summarize_exception(error: BaseException, *, max_chars: int = _MAX_SUMMARY_CHARS) -> str:
    """Human-readable one-line summary of an exception without internals."""

    message = sanitize_summary(str(error), max_chars=max_chars)
    name = type(error).__name__
    if not message:
        return name
    return sanitize_summary(f"{name}: {message}", max_chars=max_chars)
