"""
Integration tests for the health endpoint and request correlation.
"""

import pytest
from httpx import AsyncClient


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient, cache):
        cache.set(1, "snapshot")

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["entitlement_cache"]["entries"] == 1
        assert "scheduler" in data

    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-Request-ID": "trace-42"})

        assert response.headers["X-Request-ID"] == "trace-42"

    @pytest.mark.asyncio
    async def test_error_responses_carry_request_id(self, client: AsyncClient):
        response = await client.post("/api/users/delete-account", json={"userId": 777})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"]
