from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from zonetrust.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    zone_trust_exception_handler,
)
from zonetrust.apps.api.response import API_VERSION
from zonetrust.apps.api.routes.health import router as health_router
from zonetrust.apps.api.routes.kill_switches import router as kill_switches_router
from zonetrust.core.config import get_settings
from zonetrust.core.errors import ZoneTrustError
from zonetrust.core.logging import configure_logging
from zonetrust.core.redis import close_redis
from zonetrust.persistence.db import dispose_engine
from zonetrust.services.kill_switch.engine import KillSwitchEngine, build_kill_switch_engine


logger = logging.getLogger(__name__)


def create_app(engine: KillSwitchEngine | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Release pooled connections on shutdown; a no-op for the in-memory backend.
        await dispose_engine()
        await close_redis()

    app = FastAPI(title=f"{get_settings().app_name} API", lifespan=lifespan)
    app.state.kill_switch_engine = engine or build_kill_switch_engine()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "http_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(ZoneTrustError)
    async def _zone_trust_exception_handler(request: Request, exc: ZoneTrustError):
        return await zone_trust_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(kill_switches_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
