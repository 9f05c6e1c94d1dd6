# app/core/redaction.py
"""Credential scrubbing for anything that ends up in logs or the run log."""
from __future__ import annotations

import logging
import re
from typing import Any

REDACTED = "[REDACTED]"

_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Bearer\s+[A-Za-z0-9._\-~+/=]+", re.IGNORECASE), f"Bearer {REDACTED}"),
    (re.compile(r"access[_-]?token[\"']?\s*[:=]\s*[\"']?[^\s,&\"'}]+", re.IGNORECASE), f"access_token={REDACTED}"),
    (re.compile(r"refresh[_-]?token[\"']?\s*[:=]\s*[\"']?[^\s,&\"'}]+", re.IGNORECASE), f"refresh_token={REDACTED}"),
    (re.compile(r"client[_-]?secret[\"']?\s*[:=]\s*[\"']?[^\s,&\"'}]+", re.IGNORECASE), f"client_secret={REDACTED}"),
)


def sanitize_error_message(message: Any) -> str:
    if message is None:
        return ""
    text = str(message)
    for pattern, replacement in _PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact(val: str) -> str:
    if not isinstance(val, str):
        return val
    if len(val) > 16:
        return val[:4] + "***" + val[-4:]
    return "***"


class RedactingFilter(logging.Filter):
    """Renders the record once and rewrites it with credentials stripped."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except Exception:  # noqa: BLE001 - malformed args; let the handler report it
            return True
        record.msg = sanitize_error_message(rendered)
        record.args = None
        return True
