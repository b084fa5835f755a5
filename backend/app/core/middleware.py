"""Middlewares da API."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.logging import get_logger, resolve_log_level

logger = get_logger("app.request")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Registra início, fim e falhas de cada request, com um request_id."""

    def __init__(self, app, *, skip_prefixes: tuple[str, ...] | None = None, level: int | None = None):
        super().__init__(app)
        self._skip_prefixes = (
            skip_prefixes if skip_prefixes is not None else settings.request_log_skip_prefixes
        )
        self._level = level if level is not None else resolve_log_level(settings.request_log_level)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid4().hex
        path = request.url.path
        quiet = path.startswith(self._skip_prefixes)
        start = time.perf_counter()
        base = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "client_ip": _client_ip(request),
        }

        if not quiet:
            logger.log(self._level, "request.started", extra=base)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request.failed",
                extra={**base, "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
            )
            raise

        response.headers["x-request-id"] = request_id
        if not quiet:
            logger.log(
                self._level,
                "request.completed",
                extra={
                    **base,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
        return response
