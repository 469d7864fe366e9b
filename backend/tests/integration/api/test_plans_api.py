"""
Integration tests for plan catalog sync endpoints.
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient

from billing_sync.core.exceptions import ProviderRejected, ProviderUnavailable
from tests.factories import PlanFactory, UserFactory


@pytest_asyncio.fixture
async def admin_headers(db_session) -> dict:
    admin = await UserFactory.create_superadmin(db_session)
    return {"X-Acting-User-Id": str(admin.id)}


class TestSyncPlan:
    """Tests for POST /api/plans/{id}/sync."""

    @pytest.mark.asyncio
    async def test_sync_plan(self, client: AsyncClient, db_session, mock_gateway, admin_headers):
        plan = await PlanFactory.create(db_session, name="Premium", max_posts=20)
        mock_gateway.sync_plan.return_value = "2c938084-premium"

        response = await client.post(f"/api/plans/{plan.id}/sync", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == plan.id
        assert data["providerPlanId"] == "2c938084-premium"
        assert data["isSynchronized"] is True
        assert data["billingCycle"] == "monthly"
        assert data["price"] == 1000.0

    @pytest.mark.asyncio
    async def test_unknown_plan(self, client: AsyncClient, admin_headers):
        response = await client.post("/api/plans/999/sync", headers=admin_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_provider_down(self, client: AsyncClient, db_session, mock_gateway, admin_headers):
        plan = await PlanFactory.create(db_session)
        mock_gateway.sync_plan.side_effect = ProviderUnavailable()

        response = await client.post(f"/api/plans/{plan.id}/sync", headers=admin_headers)

        assert response.status_code == 503
        assert response.json()["error"] == "ProviderUnavailable"
        assert response.headers["Retry-After"] == "5"

    @pytest.mark.asyncio
    async def test_requires_superadmin(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)
        plan = await PlanFactory.create(db_session)

        response = await client.post(
            f"/api/plans/{plan.id}/sync", headers={"X-Acting-User-Id": str(user.id)}
        )

        assert response.status_code == 403


class TestSyncAll:
    """Tests for POST /api/plans/sync."""

    @pytest.mark.asyncio
    async def test_sync_all_reports_failures(self, client: AsyncClient, db_session, mock_gateway, admin_headers):
        good = await PlanFactory.create(db_session, name="Basic")
        bad = await PlanFactory.create(db_session, name="Broken")

        async def sync(plan):
            if plan.id == bad.id:
                raise ProviderRejected(message="invalid frequency", provider_status=400)
            return "mp-basic"

        mock_gateway.sync_plan.side_effect = sync

        response = await client.post("/api/plans/sync", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert [p["id"] for p in data["synced"]] == [good.id]
        assert data["failed"] == [{"planId": bad.id, "error": "invalid frequency"}]
