"""
Provider account connection service.

WHAT: Connects a publisher's MercadoPago account through OAuth, reports the
connection state with transparent token refresh, and disconnects it.

WHY: Publishers need a working provider account to receive payments for their
listings, and the create_post permission depends on it. Tokens expire or get
revoked without notice, so status checks always probe the token and refresh it
when possible instead of trusting the stored expiry.

HOW:
- authorize: state = user_{id}_{millis}, redirect to the provider consent page
- callback: parse state back to the user, exchange the code, fetch the profile,
  store encrypted tokens (older links deactivated), redirect to the dashboard
- status: probe token -> refresh if a refresh token exists -> deactivate when
  the provider refuses the refresh or no refresh token is stored
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import (
    OAuthStateError,
    PaymentProviderError,
    ProviderRejected,
    ProviderUnavailable,
    UserNotFoundError,
)
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.dao.user import UserDAO
from billing_sync.models.base import utcnow
from billing_sync.models.provider_account import ProviderAccount
from billing_sync.services.encryption_service import EncryptionService
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.payment_gateway import OAuthTokens, PaymentGateway, parse_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountStatus:
    has_account: bool
    is_active: bool
    is_token_valid: Optional[bool] = None
    token_refreshed: bool = False
    message: Optional[str] = None
    account_id: Optional[int] = None
    provider_user_id: Optional[str] = None
    expires_at: Optional[str] = None


class ProviderAccountService:
    """
    Manages provider account links.

    Args:
        session: Database session
        gateway: Provider gateway (OAuth calls use marketplace credentials)
        encryption: Token encryption
        cache: Entitlement cache, invalidated when a link changes
        public_base_url: Frontend base for post-OAuth redirects
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        encryption: EncryptionService,
        cache: EntitlementCache,
        public_base_url: str,
    ):
        self.session = session
        self.gateway = gateway
        self.encryption = encryption
        self.cache = cache
        self.public_base_url = public_base_url.rstrip("/")
        self.accounts = ProviderAccountDAO(session)
        self.users = UserDAO(session)

    # ========================================================================
    # OAuth
    # ========================================================================

    async def authorize(self, user_id: int) -> Dict[str, str]:
        """
        Build the consent URL for a user.

        Raises:
            UserNotFoundError: If the user does not exist
            OAuthConfigurationError: If marketplace credentials are missing
        """
        if await self.users.get_by_id(user_id) is None:
            raise UserNotFoundError(user_id=user_id)
        url, state = self.gateway.build_authorization_url(user_id)
        logger.info("Provider OAuth started", extra={"user_id": user_id})
        return {"auth_url": url, "state": state}

    def _dashboard(self, **params: Any) -> str:
        return f"{self.public_base_url}/dashboard?{urlencode(params)}"

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> str:
        """
        Complete the OAuth flow.

        Returns:
            Redirect URL carrying oauth_success/account_id or oauth_error.
            This never raises for provider or user errors; the redirect
            is the error channel.
        """
        if error:
            logger.info(f"Provider OAuth denied: {error}")
            return self._dashboard(oauth_error="provider_denied")

        if not code or not state:
            return self._dashboard(oauth_error="missing_parameters")

        try:
            user_id = parse_state(state)
        except OAuthStateError:
            logger.warning("Provider OAuth callback with malformed state")
            return self._dashboard(oauth_error="invalid_state")

        if await self.users.get_by_id(user_id) is None:
            logger.warning("Provider OAuth callback for unknown user", extra={"user_id": user_id})
            return self._dashboard(oauth_error="invalid_state")

        try:
            tokens = await self.gateway.exchange_code(code)
            profile = await self.gateway.get_user_info(tokens.access_token)
        except PaymentProviderError as e:
            logger.error(
                f"Provider OAuth token exchange failed: {e.message}",
                extra={"user_id": user_id},
            )
            return self._dashboard(oauth_error="token_exchange_failed")

        account = await self._store_tokens(user_id, tokens, profile)
        self.cache.invalidate(user_id)
        logger.info(
            "Provider account connected",
            extra={"user_id": user_id, "account_id": account.id},
        )
        return self._dashboard(oauth_success="true", account_id=account.id)

    async def _store_tokens(
        self,
        user_id: int,
        tokens: OAuthTokens,
        profile: Dict[str, Any],
    ) -> ProviderAccount:
        provider_user_id = tokens.provider_user_id or str(profile.get("id", ""))
        return await self.accounts.link_account(
            user_id,
            provider_user_id=provider_user_id,
            access_token_encrypted=self.encryption.encrypt(tokens.access_token),
            refresh_token_encrypted=self.encryption.encrypt_optional(tokens.refresh_token),
            expires_at=self._expires_at(tokens),
            scope=tokens.scope,
            profile_snapshot=self._snapshot(profile),
            last_validated_at=utcnow(),
        )

    @staticmethod
    def _expires_at(tokens: OAuthTokens):
        if not tokens.expires_in:
            return None
        return utcnow() + timedelta(seconds=int(tokens.expires_in))

    @staticmethod
    def _snapshot(profile: Dict[str, Any]) -> Dict[str, Any]:
        keys = ("id", "nickname", "email", "first_name", "last_name", "site_id", "country_id")
        return {k: profile.get(k) for k in keys if profile.get(k) is not None}

    # ========================================================================
    # Status / disconnect
    # ========================================================================

    async def account_status(self, user_id: int) -> AccountStatus:
        """
        Report a user's provider connection, refreshing the token if needed.

        Never raises for token problems: an unusable account is reported as
        inactive. A provider outage is reported as inactive too, but the link
        is only deactivated when the provider refuses the tokens.
        """
        account = await self.accounts.get_active_for_user(user_id)
        if account is None:
            return AccountStatus(has_account=False, is_active=False)

        access_token = self.encryption.decrypt(account.access_token_encrypted)
        try:
            token_valid = await self.gateway.validate_token(access_token)
        except ProviderUnavailable as e:
            logger.warning(
                f"Provider unavailable during token validation: {e.message}",
                extra={"user_id": user_id, "account_id": account.id},
            )
            return self._unavailable(account, is_token_valid=None)

        if token_valid:
            await self.accounts.update(account.id, last_validated_at=utcnow())
            return self._status(account, is_token_valid=True)

        if not account.has_refresh_token:
            logger.info(
                "Provider token invalid and no refresh token stored, deactivating",
                extra={
                    "user_id": user_id,
                    "account_id": account.id,
                    "token_expired": account.is_token_expired,
                },
            )
            await self._deactivate(account)
            return AccountStatus(
                has_account=True,
                is_active=False,
                is_token_valid=False,
                message="Provider token expired. Please reconnect your account",
                account_id=account.id,
                provider_user_id=account.provider_user_id,
            )

        refresh_token = self.encryption.decrypt(account.refresh_token_encrypted)
        try:
            tokens = await self.gateway.refresh_access_token(refresh_token)
        except ProviderRejected as e:
            logger.warning(
                f"Provider refused token refresh, deactivating: {e.message}",
                extra={"user_id": user_id, "account_id": account.id},
            )
            await self._deactivate(account)
            return AccountStatus(
                has_account=True,
                is_active=False,
                is_token_valid=False,
                message="Could not refresh provider token. Please reconnect your account",
                account_id=account.id,
                provider_user_id=account.provider_user_id,
            )
        except ProviderUnavailable as e:
            logger.warning(
                f"Provider unavailable during token refresh: {e.message}",
                extra={"user_id": user_id, "account_id": account.id},
            )
            return self._unavailable(account, is_token_valid=False)

        updated = await self.accounts.update(
            account.id,
            access_token_encrypted=self.encryption.encrypt(tokens.access_token),
            refresh_token_encrypted=self.encryption.encrypt_optional(tokens.refresh_token)
            or account.refresh_token_encrypted,
            expires_at=self._expires_at(tokens),
            last_validated_at=utcnow(),
        )
        logger.info("Provider token refreshed", extra={"user_id": user_id, "account_id": account.id})
        return self._status(updated, is_token_valid=True, token_refreshed=True)

    async def disconnect(self, user_id: int) -> int:
        """Deactivate every provider link of a user."""
        count = await self.accounts.deactivate_all_for_user(user_id)
        self.cache.invalidate(user_id)
        logger.info(f"Disconnected {count} provider accounts", extra={"user_id": user_id})
        return count

    @staticmethod
    def _unavailable(account: ProviderAccount, is_token_valid: Optional[bool]) -> AccountStatus:
        return AccountStatus(
            has_account=True,
            is_active=False,
            is_token_valid=is_token_valid,
            message="Payment provider unavailable. Please try again later",
            account_id=account.id,
            provider_user_id=account.provider_user_id,
        )

    async def _deactivate(self, account: ProviderAccount) -> None:
        await self.accounts.update(account.id, is_active=False)
        self.cache.invalidate(account.user_id)

    @staticmethod
    def _status(
        account: ProviderAccount,
        is_token_valid: bool,
        token_refreshed: bool = False,
    ) -> AccountStatus:
        return AccountStatus(
            has_account=True,
            is_active=True,
            is_token_valid=is_token_valid,
            token_refreshed=token_refreshed,
            message="Provider token refreshed" if token_refreshed else None,
            account_id=account.id,
            provider_user_id=account.provider_user_id,
            expires_at=account.expires_at.isoformat() if account.expires_at else None,
        )
