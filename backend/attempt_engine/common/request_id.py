"""Request ID middleware.

Accepts or generates ``X-Request-ID``, binds it to the log context for the
duration of the request and writes one access line per request. Requests on
``/attempts/{attempt_id}`` routes also log the attempt id.
"""

import time
import uuid
from typing import Any, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from attempt_engine.core.logging import bind_log_context, get_logger, reset_log_context

logger = get_logger(__name__)


def _request_fields(request: Request, request_id: str, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "latency_ms": int((time.perf_counter() - started) * 1000),
    }
    # Filled in by the router once the route matched
    attempt_id = (request.scope.get("path_params") or {}).get("attempt_id")
    if attempt_id is not None:
        fields["attempt_id"] = str(attempt_id)
    return fields


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate and track request IDs."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = bind_log_context(request_id=request_id)

        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "Request failed",
                    extra={**_request_fields(request, request_id, started), "status_code": 500, "error": str(e)},
                    exc_info=True,
                )
                raise

            response.headers["X-Request-ID"] = request_id
            logger.info(
                "Request completed",
                extra={**_request_fields(request, request_id, started), "status_code": response.status_code},
            )
            return response
        finally:
            reset_log_context(token)
