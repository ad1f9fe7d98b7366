from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

_PATH_CONTEXT_KEYS = ("definition_id", "execution_id", "approval_id", "escalation_id", "step_id")


def _request_fields(request: Request) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in _PATH_CONTEXT_KEYS:
        value = request.path_params.get(key)
        if value is not None:
            fields[key] = str(value)
    context = getattr(request.state, "context", None)
    if context is not None:
        if context.user_id:
            fields["user_id"] = context.user_id
        if context.team_id:
            fields["team_id"] = context.team_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # The route is only known once the router has matched it.
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_request_fields(request),
            },
        )
        return response
