"""
Integration tests for subscription endpoints.

WHAT: Plan change, unsubscribe and manual status checks through HTTP.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from billing_sync.core.exceptions import ProviderUnavailable
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services.payment_gateway import StatusProbe
from tests.factories import PlanFactory, PostFactory, SubscriptionFactory, UserFactory

T0 = datetime(2025, 3, 1, 12, 0, 0)


def _as(user) -> dict:
    return {"X-Acting-User-Id": str(user.id)}


async def _plan_change_setup(db_session):
    user = await UserFactory.create(db_session)
    basic = await PlanFactory.create(db_session, name="Basic", max_posts=1, max_bookings=0)
    premium = await PlanFactory.create(db_session, name="Premium", max_posts=10, max_bookings=5)
    old = await SubscriptionFactory.create(db_session, user, basic, provider_subscription_id="pre-old")
    new = await SubscriptionFactory.create(
        db_session, user, premium, status=SubscriptionStatus.PENDING_PAYMENT, provider_subscription_id="pre-new"
    )
    return user, old, new


class TestChangePlan:
    """Tests for POST /api/subscriptions/change-plan."""

    @pytest.mark.asyncio
    async def test_change_plan(self, client: AsyncClient, db_session):
        user, old, new = await _plan_change_setup(db_session)

        response = await client.post(
            "/api/subscriptions/change-plan",
            json={"userId": user.id, "oldSubscriptionId": old.id, "newSubscriptionId": new.id},
            headers=_as(user),
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "oldSubscriptionId": old.id,
            "newSubscriptionId": new.id,
            "newPlanName": "Premium",
            "providerCancelled": True,
        }
        assert await UserSubscriptionDAO(db_session).count_active(user.id) == 1

    @pytest.mark.asyncio
    async def test_entitlements_reflect_new_plan(self, client: AsyncClient, db_session):
        """
        Test the next entitlement read sees the new plan, not a cached one.
        """
        user, old, new = await _plan_change_setup(db_session)
        await PostFactory.create(db_session, user)

        before = await client.post("/api/entitlements/check-user", json={"userId": user.id})
        assert before.json()["remainingPosts"] == 0
        assert "publisher" not in before.json()["roles"]

        await client.post(
            "/api/subscriptions/change-plan",
            json={"userId": user.id, "oldSubscriptionId": old.id, "newSubscriptionId": "pre-new"},
            headers=_as(user),
        )
        after = await client.post("/api/entitlements/check-user", json={"userId": user.id})

        data = after.json()
        assert data["subscription"]["id"] == new.id
        assert data["remainingPosts"] == 9
        assert "publisher" in data["roles"]

    @pytest.mark.asyncio
    async def test_foreign_subscription_forbidden(self, client: AsyncClient, db_session):
        user, old, _ = await _plan_change_setup(db_session)
        other = await UserFactory.create(db_session)

        response = await client.post(
            "/api/subscriptions/change-plan",
            json={"userId": other.id, "oldSubscriptionId": old.id, "newSubscriptionId": "pre-new"},
            headers=_as(other),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "AuthorizationError"

    @pytest.mark.asyncio
    async def test_missing_subscription(self, client: AsyncClient, db_session):
        user, _, new = await _plan_change_setup(db_session)

        response = await client.post(
            "/api/subscriptions/change-plan",
            json={"userId": user.id, "oldSubscriptionId": 9999, "newSubscriptionId": new.id},
            headers=_as(user),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_fields(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)

        response = await client.post(
            "/api/subscriptions/change-plan", json={"userId": user.id}, headers=_as(user)
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_cannot_change_another_users_plan(self, client: AsyncClient, db_session):
        user, old, new = await _plan_change_setup(db_session)
        caller = await UserFactory.create(db_session)
        old_id = old.id

        response = await client.post(
            "/api/subscriptions/change-plan",
            json={"userId": user.id, "oldSubscriptionId": old.id, "newSubscriptionId": new.id},
            headers=_as(caller),
        )

        assert response.status_code == 403
        stored = await UserSubscriptionDAO(db_session).get_by_id(old_id)
        assert stored.status == SubscriptionStatus.ACTIVE


class TestUnsubscribe:
    """Tests for POST /api/subscriptions/unsubscribe."""

    @pytest.mark.asyncio
    async def test_unsubscribe_twice(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create_publisher(db_session)
        plan = await PlanFactory.create(db_session)
        subscription = await SubscriptionFactory.create(db_session, user, plan, provider_subscription_id="pre-1")
        await PostFactory.create(db_session, user)

        first = await client.post(
            "/api/subscriptions/unsubscribe",
            json={"userId": user.id, "subscriptionId": subscription.id},
            headers=_as(user),
        )
        second = await client.post(
            "/api/subscriptions/unsubscribe", json={"userId": user.id}, headers=_as(user)
        )

        assert first.status_code == 200
        data = first.json()
        assert data["deletedCounts"]["subscriptions"] == 1
        assert data["deletedCounts"]["posts"] == 1
        assert data["totalDeleted"] == 2
        assert data["partialFailure"] is False
        assert data["rolesUpdated"] is True
        assert data["userDeleted"] is False

        assert second.status_code == 200
        assert second.json()["totalDeleted"] == 0
        mock_gateway.cancel_subscription.assert_awaited_once_with("pre-1")

    @pytest.mark.asyncio
    async def test_requires_caller(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)

        response = await client.post("/api/subscriptions/unsubscribe", json={"userId": user.id})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_cannot_unsubscribe_another_user(self, client: AsyncClient, db_session, mock_gateway):
        victim = await UserFactory.create_publisher(db_session)
        caller = await UserFactory.create(db_session)
        subscription = await SubscriptionFactory.create(db_session, victim, provider_subscription_id="pre-1")
        subscription_id = subscription.id

        response = await client.post(
            "/api/subscriptions/unsubscribe", json={"userId": victim.id}, headers=_as(caller)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "AuthorizationError"
        mock_gateway.cancel_subscription.assert_not_awaited()
        stored = await UserSubscriptionDAO(db_session).get_by_id(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cannot_cancel_another_users_preapproval(
        self, client: AsyncClient, db_session, mock_gateway
    ):
        victim = await UserFactory.create_publisher(db_session)
        caller = await UserFactory.create(db_session)
        await SubscriptionFactory.create(db_session, victim, provider_subscription_id="pre-victim")

        response = await client.post(
            "/api/subscriptions/unsubscribe",
            json={"userId": caller.id, "providerSubscriptionId": "pre-victim"},
            headers=_as(caller),
        )

        assert response.status_code == 403
        mock_gateway.cancel_subscription.assert_not_awaited()


class TestCheckStatus:
    """Tests for POST /api/subscriptions/check-status."""

    @pytest.mark.asyncio
    async def test_applies_provider_change(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        plan = await PlanFactory.create(db_session)
        subscription = await SubscriptionFactory.create(
            db_session, user, plan, provider_subscription_id="pre-1"
        )
        mock_gateway.probe_subscription_status.side_effect = None
        mock_gateway.probe_subscription_status.return_value = StatusProbe(
            "pre-1", "cancelled", SubscriptionStatus.CANCELLED, SubscriptionStatus.ACTIVE, T0
        )

        response = await client.post(
            "/api/subscriptions/check-status", json={"userId": user.id}, headers=_as(user)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["updated"] == 1
        assert data["results"][0] == {
            "subscriptionId": subscription.id,
            "providerSubscriptionId": "pre-1",
            "previousStatus": "active",
            "currentStatus": "cancelled",
            "providerStatus": "cancelled",
            "outcome": "applied",
            "error": None,
        }

    @pytest.mark.asyncio
    async def test_provider_down_reported_per_item(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        subscription = await SubscriptionFactory.create(db_session, user, provider_subscription_id="pre-1")
        mock_gateway.probe_subscription_status.side_effect = ProviderUnavailable()

        response = await client.post(
            "/api/subscriptions/check-status",
            json={"subscriptionId": subscription.id},
            headers=_as(user),
        )

        assert response.status_code == 200
        assert response.json()["updated"] == 0
        assert response.json()["results"][0]["error"] == "ProviderUnavailable"

    @pytest.mark.asyncio
    async def test_requires_target(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)

        response = await client.post("/api/subscriptions/check-status", json={}, headers=_as(user))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_cannot_check_another_user(self, client: AsyncClient, db_session, mock_gateway):
        victim = await UserFactory.create(db_session)
        caller = await UserFactory.create(db_session)
        await SubscriptionFactory.create(db_session, victim, provider_subscription_id="pre-1")

        response = await client.post(
            "/api/subscriptions/check-status", json={"userId": victim.id}, headers=_as(caller)
        )

        assert response.status_code == 403
        mock_gateway.probe_subscription_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_subscription_id_is_scoped_to_caller(self, client: AsyncClient, db_session):
        victim = await UserFactory.create(db_session)
        caller = await UserFactory.create(db_session)
        subscription = await SubscriptionFactory.create(db_session, victim, provider_subscription_id="pre-1")

        response = await client.post(
            "/api/subscriptions/check-status",
            json={"subscriptionId": subscription.id},
            headers=_as(caller),
        )

        assert response.status_code == 404
