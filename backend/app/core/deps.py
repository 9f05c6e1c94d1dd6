# app/core/deps.py
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header

from app.core.config import settings
from app.core.errors import APIError


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> str:
    """
    Admin endpoints share one key. With ``ADMIN_API_KEY`` unset every call is
    refused rather than left open.
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise APIError("ADMIN_DISABLED", "Admin API key is not configured.", 503)
    if not x_api_key:
        raise APIError("AUTH_REQUIRED", "X-API-Key header is required.", 401)
    if not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        raise APIError("AUTH_INVALID", "Invalid API key.", 401)
    return x_api_key
