"""
Integration tests for the MercadoPago webhook endpoint.

WHY: The endpoint always answers 200. A non-2xx makes the provider redeliver,
which cannot fix an error on our side; reconciliation is the retry path.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from billing_sync.core.exceptions import ProviderUnavailable
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services.payment_gateway import ProviderSubscription
from tests.factories import PlanFactory, SubscriptionFactory, UserFactory

T0 = datetime(2025, 3, 1, 12, 0, 0)
URL = "/api/webhooks/mercadopago"


class TestMercadoPagoWebhook:
    @pytest.mark.asyncio
    async def test_preapproval_event(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        plan = await PlanFactory.create(db_session)
        subscription = await SubscriptionFactory.create(
            db_session, user, plan,
            status=SubscriptionStatus.PENDING_PAYMENT,
            provider_subscription_id="pre-1",
        )
        mock_gateway.get_subscription.return_value = ProviderSubscription("pre-1", "authorized", T0)

        response = await client.post(
            URL,
            json={"type": "subscription_preapproval", "action": "updated", "data": {"id": "pre-1"}},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["outcome"] == "applied"
        stored = await UserSubscriptionDAO(db_session).get_by_id(subscription.id)
        await db_session.refresh(stored)
        assert stored.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_query_string_form(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        await SubscriptionFactory.create(
            db_session, user, status=SubscriptionStatus.PENDING_PAYMENT, provider_subscription_id="pre-2"
        )
        mock_gateway.get_subscription.return_value = ProviderSubscription("pre-2", "authorized", T0)

        response = await client.post(f"{URL}?topic=preapproval&id=pre-2")

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        mock_gateway.get_subscription.assert_awaited_once_with("pre-2")

    @pytest.mark.asyncio
    async def test_redelivery(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        await SubscriptionFactory.create(
            db_session, user, status=SubscriptionStatus.PENDING_PAYMENT, provider_subscription_id="pre-3"
        )
        mock_gateway.get_subscription.return_value = ProviderSubscription("pre-3", "authorized", T0)
        body = {"type": "subscription_preapproval", "data": {"id": "pre-3"}}

        await client.post(URL, json=body)
        replay = await client.post(URL, json=body)

        assert replay.status_code == 200
        assert replay.json()["outcome"] == "stale"

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, client: AsyncClient, mock_gateway):
        response = await client.post(URL, json={"type": "chargebacks", "data": {"id": "1"}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: AsyncClient):
        response = await client.post(
            URL, content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    @pytest.mark.asyncio
    async def test_provider_down(self, client: AsyncClient, mock_gateway):
        mock_gateway.get_subscription.side_effect = ProviderUnavailable()

        response = await client.post(URL, json={"type": "subscription_preapproval", "data": {"id": "pre-9"}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "deferred"

    @pytest.mark.asyncio
    async def test_unexpected_error_still_acknowledged(self, client: AsyncClient, mock_gateway):
        mock_gateway.get_subscription.side_effect = RuntimeError("bug")

        response = await client.post(URL, json={"type": "subscription_preapproval", "data": {"id": "pre-9"}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "error"
