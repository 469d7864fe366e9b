"""
Unit tests for RequestContextMiddleware.
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from billing_sync.middleware.request_context import (
    REQUEST_ID_HEADER,
    RequestContextMiddleware,
    get_request_context,
)


@pytest.fixture
def context_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/whoami")
    async def whoami():
        context = get_request_context()
        return {
            "requestId": context.request_id,
            "path": context.path,
            "method": context.method,
            "actingUserId": context.acting_user_id,
        }

    return app


class TestRequestContextMiddleware:
    @pytest.mark.asyncio
    async def test_generates_request_id(self, context_app):
        async with AsyncClient(transport=ASGITransport(app=context_app), base_url="http://test") as ac:
            response = await ac.get("/whoami")

        body = response.json()
        assert response.headers[REQUEST_ID_HEADER] == body["requestId"]
        assert len(body["requestId"]) == 36
        assert body["path"] == "/whoami"
        assert body["method"] == "GET"
        assert body["actingUserId"] is None

    @pytest.mark.asyncio
    async def test_keeps_incoming_request_id(self, context_app):
        async with AsyncClient(transport=ASGITransport(app=context_app), base_url="http://test") as ac:
            response = await ac.get(
                "/whoami",
                headers={REQUEST_ID_HEADER: "gw-123", "X-Acting-User-Id": "7"},
            )

        assert response.headers[REQUEST_ID_HEADER] == "gw-123"
        assert response.json()["actingUserId"] == "7"

    def test_no_context_outside_requests(self):
        assert get_request_context() is None
