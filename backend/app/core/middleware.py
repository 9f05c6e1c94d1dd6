# app/core/middleware.py
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.core.config import settings


def install_middleware(app: FastAPI) -> None:
    """
    - ProxyHeadersMiddleware: honour X-Forwarded-* behind a reverse proxy
    - CORSMiddleware: only when ``CORS_ORIGINS`` is set
    - GZipMiddleware: large log/stat listings
    """
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    cors_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
            max_age=86400,
        )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
