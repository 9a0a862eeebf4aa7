"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from billing_engine.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and response with a correlation id.

    An incoming ``X-Request-ID`` is reused so that calls can be traced across
    services; otherwise a new id is generated. The id is bound to every log
    line emitted while the request is handled and echoed on the response.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query_params=str(request.query_params) if request.query_params else None,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.time()
        try:
            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


def _path_segment_after(path: str, marker: str) -> Optional[str]:
    parts = [p for p in path.split("/") if p]
    try:
        index = parts.index(marker)
    except ValueError:
        return None
    return parts[index + 1] if len(parts) > index + 1 else None


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds billing context from the request to the logging context.

    - owner_id from the ``X-Owner-Id`` header or an ``/owners/{id}`` path
    - payment_method_id from a ``/cards/{id}`` path
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        owner_id = request.headers.get("x-owner-id") or _path_segment_after(path, "owners")
        if owner_id:
            bind_context(owner_id=owner_id)

        payment_method_id = _path_segment_after(path, "cards")
        if payment_method_id:
            bind_context(payment_method_id=payment_method_id)

        return await call_next(request)
