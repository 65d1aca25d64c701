from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("leadflow.request")


def _request_fields(request: Request, path: str, status_code: int, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    tenant_id = request.headers.get("x-tenant-id")
    if tenant_id:
        fields["tenant_id"] = tenant_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = resolve_http_path_label(request)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _request_fields(request, path, 500, started)
            observe_http_request(method=request.method, path=path, status=500, duration=fields["duration_ms"] / 1000)
            logger.error("http_error", exc_info=True, extra=fields)
            raise

        fields = _request_fields(request, path, response.status_code, started)
        observe_http_request(
            method=request.method,
            path=path,
            status=response.status_code,
            duration=fields["duration_ms"] / 1000,
        )
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http_request", extra=fields)
        return response
