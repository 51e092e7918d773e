from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from logproxy.apps.api.errors import (
    http_exception_handler,
    logproxy_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from logproxy.apps.api.routes.admin import router as admin_router
from logproxy.apps.api.routes.config import router as config_router
from logproxy.apps.api.routes.export import router as export_router
from logproxy.apps.api.routes.field_explorer import router as field_explorer_router
from logproxy.apps.api.routes.health import router as health_router
from logproxy.apps.api.routes.rules import router as rules_router
from logproxy.apps.api.routes.search import router as search_router
from logproxy.apps.api.state import AppState, build_state
from logproxy.core.errors import LogProxyError
from logproxy.core.logging import configure_logging
from logproxy.services.operability.worker import run_alert_loop, run_metrics_flush_loop


logger = logging.getLogger(__name__)


async def _cancel(tasks: list[asyncio.Task[None]]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


def create_app(state: AppState | None = None) -> FastAPI:
    configure_logging()
    # State is built eagerly so test transports that skip lifespan still see it.
    app_state = state or build_state()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = app_state.settings
        tasks: list[asyncio.Task[None]] = [
            asyncio.create_task(
                run_metrics_flush_loop(app_state.metrics, interval_s=settings.metrics_flush_interval_s)
            )
        ]
        if settings.alert_scheduler_enabled:
            tasks.append(
                asyncio.create_task(
                    run_alert_loop(app_state.scheduler, interval_s=settings.alert_eval_interval_s)
                )
            )
        logger.info("logproxy_started search_url=%s background_tasks=%s", settings.search_url, len(tasks))
        try:
            yield
        finally:
            await _cancel(tasks)
            try:
                await app_state.metrics.flush()
            except LogProxyError:
                logger.exception("metrics_final_flush_failed")
            await app_state.executor.aclose()

    app = FastAPI(title="Log Search Proxy", lifespan=lifespan)
    app.state.logproxy = app_state

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        app_state.telemetry.record_request(
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(LogProxyError)
    async def _logproxy_exception_handler(request: Request, exc: LogProxyError):
        return await logproxy_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(config_router)
    app.include_router(search_router)
    app.include_router(export_router)
    app.include_router(field_explorer_router)
    app.include_router(rules_router)
    app.include_router(admin_router)

    return app
