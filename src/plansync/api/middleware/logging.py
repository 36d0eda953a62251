"""Request logging middleware for FastAPI.

Every request gets a correlation id, echoed back in ``X-Correlation-ID``, and
the owner it acts for. Both are bound into the structlog context so that
membership and billing log lines emitted while handling the request carry
them. Health and metrics endpoints are logged at debug level only.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from plansync.api.dependencies import OWNER_ID_HEADER
from plansync.core.logging import (
    bind_contextvars,
    clear_contextvars,
    clear_correlation_id,
    get_logger,
    set_correlation_id,
)
from plansync.payments.webhook import SIGNATURE_HEADER

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
HEALTH_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds request context and logs each request's outcome."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        clear_contextvars()
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER) or None)

        context: dict[str, str | bool] = {
            "method": request.method,
            "path": request.url.path,
        }
        owner_id = request.headers.get(OWNER_ID_HEADER)
        if owner_id:
            context["owner_id"] = owner_id
        if "/webhooks/" in request.url.path:
            context["signed"] = SIGNATURE_HEADER in request.headers
        bind_contextvars(**context)

        log = logger.debug if request.url.path in HEALTH_PATHS else logger.info
        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            if response.status_code >= 500:
                log = logger.warning
            log(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response

        except Exception as exc:
            logger.exception(
                "request_failed",
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error_type=type(exc).__name__,
            )
            raise

        finally:
            clear_contextvars()
            clear_correlation_id()
