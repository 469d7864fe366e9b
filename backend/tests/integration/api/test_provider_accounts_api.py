"""
Integration tests for provider account endpoints.

WHAT: OAuth start and callback, connection status and disconnect.

WHY: The callback is hit by the user's browser. It must always redirect to
the dashboard, with the outcome in the query string, and never show a raw
error page.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient

from billing_sync.core import config as config_module
from billing_sync.core.exceptions import ProviderRejected, ProviderUnavailable
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.services.payment_gateway import OAuthTokens
from tests.factories import ProviderAccountFactory, UserFactory

FRONTEND = "https://marketplace.example.com"


@pytest.fixture(autouse=True)
def public_base_url(monkeypatch):
    monkeypatch.setattr(config_module.settings, "PUBLIC_BASE_URL", FRONTEND)


def _as(user) -> dict:
    return {"X-Acting-User-Id": str(user.id)}


def _redirect_params(response) -> dict:
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == FRONTEND + "/dashboard"
    return {k: v[0] for k, v in parse_qs(location.query).items()}


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_authorize(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        mock_gateway.build_authorization_url.return_value = (
            "https://auth.mercadopago.com/authorization?client_id=1",
            f"user_{user.id}_1700000000000",
        )

        response = await client.post(
            "/api/provider-accounts/oauth/authorize", json={"userId": user.id}, headers=_as(user)
        )

        assert response.status_code == 200
        assert response.json() == {
            "authUrl": "https://auth.mercadopago.com/authorization?client_id=1",
            "state": f"user_{user.id}_1700000000000",
        }

    @pytest.mark.asyncio
    async def test_cannot_authorize_for_another_user(self, client: AsyncClient, db_session, mock_gateway):
        victim = await UserFactory.create(db_session)
        caller = await UserFactory.create(db_session)

        response = await client.post(
            "/api/provider-accounts/oauth/authorize", json={"userId": victim.id}, headers=_as(caller)
        )

        assert response.status_code == 403
        mock_gateway.build_authorization_url.assert_not_called()


class TestCallback:
    """Tests for GET /api/provider-accounts/oauth/callback."""

    @pytest.mark.asyncio
    async def test_success(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        mock_gateway.exchange_code.return_value = OAuthTokens(
            access_token="APP_USR-x", refresh_token="TG-y", expires_in=21600,
            scope="offline_access", provider_user_id="555",
        )
        mock_gateway.get_user_info.return_value = {"id": 555, "nickname": "ANDES"}

        response = await client.get(
            "/api/provider-accounts/oauth/callback",
            params={"code": "TG-code", "state": f"user_{user.id}_1700000000000"},
        )

        params = _redirect_params(response)
        assert params["oauth_success"] == "true"
        account = await ProviderAccountDAO(db_session).get_active_for_user(user.id)
        assert params["account_id"] == str(account.id)

    @pytest.mark.asyncio
    async def test_denied(self, client: AsyncClient):
        response = await client.get(
            "/api/provider-accounts/oauth/callback", params={"error": "access_denied"}
        )

        assert _redirect_params(response) == {"oauth_error": "provider_denied"}

    @pytest.mark.asyncio
    async def test_invalid_state(self, client: AsyncClient):
        response = await client.get(
            "/api/provider-accounts/oauth/callback", params={"code": "c", "state": "forged"}
        )

        assert _redirect_params(response) == {"oauth_error": "invalid_state"}

    @pytest.mark.asyncio
    async def test_exchange_failure(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        mock_gateway.exchange_code.side_effect = ProviderRejected(provider_status=400)

        response = await client.get(
            "/api/provider-accounts/oauth/callback",
            params={"code": "expired", "state": f"user_{user.id}_1"},
        )

        assert _redirect_params(response) == {"oauth_error": "token_exchange_failed"}

    @pytest.mark.asyncio
    async def test_unexpected_error_still_redirects(self, client: AsyncClient, db_session, mock_gateway):
        user = await UserFactory.create(db_session)
        mock_gateway.exchange_code.side_effect = RuntimeError("boom")

        response = await client.get(
            "/api/provider-accounts/oauth/callback",
            params={"code": "c", "state": f"user_{user.id}_1"},
        )

        assert _redirect_params(response) == {"oauth_error": "server_error"}


class TestStatusAndDisconnect:
    @pytest.mark.asyncio
    async def test_status_without_account(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)

        response = await client.get(f"/api/provider-accounts/{user.id}/status", headers=_as(user))

        assert response.status_code == 200
        assert response.json()["hasAccount"] is False
        assert response.json()["isActive"] is False

    @pytest.mark.asyncio
    async def test_status_with_valid_token(self, client: AsyncClient, db_session, encryption):
        user = await UserFactory.create(db_session)
        account = await ProviderAccountFactory.create(db_session, user, encryption)

        response = await client.get(f"/api/provider-accounts/{user.id}/status", headers=_as(user))

        data = response.json()
        assert data["hasAccount"] is True
        assert data["isActive"] is True
        assert data["isTokenValid"] is True
        assert data["accountId"] == account.id
        assert "accessToken" not in data

    @pytest.mark.asyncio
    async def test_status_token_refreshed(self, client: AsyncClient, db_session, encryption, mock_gateway):
        user = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, user, encryption)
        mock_gateway.validate_token.return_value = False
        mock_gateway.refresh_access_token.return_value = OAuthTokens(
            access_token="APP_USR-fresh", refresh_token="TG-fresh", expires_in=21600,
            scope=None, provider_user_id="123456",
        )

        response = await client.get(f"/api/provider-accounts/{user.id}/status", headers=_as(user))

        assert response.json()["tokenRefreshed"] is True
        assert response.json()["isActive"] is True

    @pytest.mark.asyncio
    async def test_disconnect(self, client: AsyncClient, db_session, encryption):
        user = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, user, encryption)

        response = await client.post(f"/api/provider-accounts/{user.id}/disconnect", headers=_as(user))

        assert response.status_code == 200
        assert response.json() == {"success": True, "deactivated": 1}
        status = await client.get(f"/api/provider-accounts/{user.id}/status", headers=_as(user))
        assert status.json()["hasAccount"] is False

    @pytest.mark.asyncio
    async def test_requires_caller(self, client: AsyncClient, db_session):
        user = await UserFactory.create(db_session)

        response = await client.get(f"/api/provider-accounts/{user.id}/status")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_other_users_status_forbidden(self, client: AsyncClient, db_session, encryption, mock_gateway):
        victim = await UserFactory.create(db_session)
        caller = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, victim, encryption)

        response = await client.get(f"/api/provider-accounts/{victim.id}/status", headers=_as(caller))

        assert response.status_code == 403
        mock_gateway.validate_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_users_disconnect_forbidden(self, client: AsyncClient, db_session, encryption):
        victim = await UserFactory.create(db_session)
        caller = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, victim, encryption)
        victim_id = victim.id

        response = await client.post(f"/api/provider-accounts/{victim_id}/disconnect", headers=_as(caller))

        assert response.status_code == 403
        assert await ProviderAccountDAO(db_session).get_active_for_user(victim_id) is not None

    @pytest.mark.asyncio
    async def test_status_during_outage_keeps_link(
        self, client: AsyncClient, db_session, encryption, mock_gateway
    ):
        user = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, user, encryption, refresh_token=None)
        mock_gateway.validate_token.side_effect = ProviderUnavailable()

        response = await client.get(f"/api/provider-accounts/{user.id}/status", headers=_as(user))

        assert response.status_code == 200
        assert response.json()["isActive"] is False
        assert await ProviderAccountDAO(db_session).get_active_for_user(user.id) is not None
