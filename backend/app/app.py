# app/app.py
from __future__ import annotations
from typing import Dict, Any
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from app.core.config import settings
from app.core.errors import install_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import install_middleware

from app.features.healthz.router import router as healthz_router
from app.features.admin.router import router as admin_router


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if settings.DEBUG else None,
    )

    # Core setup
    install_middleware(app)
    install_exception_handlers(app)

    # Routers
    app.include_router(healthz_router)
    app.include_router(admin_router)

    def _custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        app.openapi_schema = get_openapi(
            title=app.title,
            version=settings.APP_VERSION,
            routes=app.routes,
            description="TikTok store metrics sync API",
        )
        return app.openapi_schema

    app.openapi = _custom_openapi  # type: ignore[assignment]

    return app

app = create_app()
