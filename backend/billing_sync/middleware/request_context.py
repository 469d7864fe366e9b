"""
Request context middleware for log correlation.

WHAT: Assigns every request an id (or keeps the one the API gateway sent),
exposes it through a ContextVar, echoes it in X-Request-ID and logs one line
per request with status and duration.

WHY: One plan change or webhook touches the store, the provider and the
cache. A shared request id ties those log lines together, and webhook
deliveries can be matched against the provider's own delivery log.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    path: str
    method: str
    acting_user_id: Optional[str] = None


# WHY: ContextVar gives each concurrent request its own context
_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """Current request context, or None outside a request (scheduler jobs)."""
    return _request_context.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        context = RequestContext(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            acting_user_id=request.headers.get("X-Acting-User-Id"),
        )
        request.state.context = context
        token = _request_context.set(context)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "request_id": request_id,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return response
        finally:
            _request_context.reset(token)
