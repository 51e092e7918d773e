from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from logproxy.core.errors import (
    LogProxyError,
    PolicyViolationError,
    RequestValidationFailed,
    UpstreamError,
)


logger = logging.getLogger(__name__)


def error_body(message: str, detail: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": message}
    if detail is not None:
        payload["detail"] = detail
    return payload


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(content=error_body(message), status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        content=error_body("Invalid request", jsonable_encoder(exc.errors())),
        status_code=400,
    )


async def logproxy_exception_handler(request: Request, exc: LogProxyError) -> JSONResponse:
    # Policy denials never say which indices exist; upstream failures only expose the extracted detail.
    if isinstance(exc, PolicyViolationError):
        return JSONResponse(content=error_body(str(exc) or "Forbidden"), status_code=403)
    if isinstance(exc, RequestValidationFailed):
        return JSONResponse(content=error_body(str(exc) or "Invalid request"), status_code=400)
    if isinstance(exc, UpstreamError):
        label = getattr(request.state, "upstream_label", None) or "Search failed"
        status_code = exc.status if 400 <= exc.status <= 599 else 502
        return JSONResponse(content=error_body(label, jsonable_encoder(exc.detail)), status_code=status_code)
    logger.error("unhandled_logproxy_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(content=error_body("Internal server error"), status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=error_body("Internal server error"), status_code=500)
