"""
Middleware package.

WHY: Middleware provides cross-cutting concerns that apply to all requests.
"""

from billing_sync.middleware.request_context import (
    RequestContext,
    RequestContextMiddleware,
    get_request_context,
)

__all__ = [
    "RequestContext",
    "RequestContextMiddleware",
    "get_request_context",
]
