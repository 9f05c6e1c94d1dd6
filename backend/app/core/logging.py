"""Centralized logging configuration."""
from __future__ import annotations

import logging

from app.core.config import settings
from app.core.redaction import RedactingFilter

_NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "celery.redirected",
)


def configure_logging(level: str | None = None) -> None:
    """Set the root level/format from settings and attach the redacting filter."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        force=True,
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
