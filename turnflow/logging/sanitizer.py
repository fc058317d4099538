from __future__ import annotations

import re

from turnflow.logging.redaction import redact_secrets, summarize_text

# Keep common whitespace control characters, remove the rest.
_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRACEBACK_MARKER = "Traceback (most recent call last)"


def sanitize_text(text: str) -> str:
    return _CONTROL_PATTERN.sub("", text)


def user_safe_message(text: str | None, fallback: str, max_chars: int = 300) -> str:
    """Reduce an error string to something fit for a model or end user.

    Tracebacks are dropped entirely; the rest is stripped of control characters,
    redacted and clipped.
    """
    if not text or _TRACEBACK_MARKER in text:
        return fallback
    cleaned = redact_secrets(sanitize_text(text)).strip()
    if not cleaned:
        return fallback
    return summarize_text(cleaned.splitlines()[0], max_chars)
