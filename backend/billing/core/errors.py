"""Error helpers and the JSON error envelope used by both services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException


def api_error(
    status_code: int,
    message: str,
    code: str,
    details: dict[str, Any] | None = None,
) -> HTTPException:
    """Build an HTTPException carrying a machine-readable error code."""

    detail: dict[str, Any] = {"message": message, "code": code}
    if details is not None:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def _envelope(request: Request, status_code: int, message: str, code: str) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "message": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "requestId": getattr(request.state, "request_id", None),
    }


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        body = _envelope(
            request, exc.status_code, str(detail.get("message", "")), str(detail.get("code", "ERROR"))
        )
        if "details" in detail:
            body["details"] = detail["details"]
    else:
        body = _envelope(request, exc.status_code, str(detail), "ERROR")
    logger.bind(status=exc.status_code, path=request.url.path, code=body["code"]).warning(
        "http_error"
    )
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = _envelope(
        request, status.HTTP_400_BAD_REQUEST, "Validation failed", "VALIDATION_ERROR"
    )
    body["errors"] = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).bind(path=request.url.path).error("unhandled_error")
    body = _envelope(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "INTERNAL_ERROR",
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
