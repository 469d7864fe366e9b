"""
MercadoPago payment provider gateway.

WHAT: Async HTTP client for the provider calls this service needs:
marketplace OAuth, preapproval plan sync, preapproval cancellation and status
probes, and payment lookups.

WHY: Every provider interaction goes through one place so that:
- every call has an explicit timeout
- failures are typed (ProviderUnavailable vs ProviderRejected) instead of
  being discriminated by provider error strings
- the two credential scopes stay apart: plan/subscription calls use the
  platform token from ProviderConfig, account connection uses the marketplace
  client credentials from OAuthConfig

HOW: Uses httpx.AsyncClient per call. The gateway never retries; callers
use call_with_retry() for the single retry-with-backoff on transient errors.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import urlencode

import httpx

from billing_sync.core.config import ProviderConfig, OAuthConfig
from billing_sync.core.exceptions import (
    OAuthConfigurationError,
    OAuthStateError,
    ProviderRejected,
    ProviderUnavailable,
)
from billing_sync.models.base import utc_naive
from billing_sync.models.plan import BillingCycle
from billing_sync.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Provider preapproval status -> internal status.
# WHY: Anything not listed (e.g. unknown future statuses) is ignored rather
# than guessed.
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "pending": SubscriptionStatus.PENDING_PAYMENT,
    "authorized": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "finished": SubscriptionStatus.EXPIRED,
}

# Internal billing cycle -> (frequency, frequency_type)
FREQUENCY_MAP: Dict[BillingCycle, Tuple[int, str]] = {
    BillingCycle.DAILY: (1, "days"),
    BillingCycle.WEEKLY: (7, "days"),
    BillingCycle.MONTHLY: (1, "months"),
    BillingCycle.YEARLY: (12, "months"),
}

STATE_PATTERN = re.compile(r"^user_(\d+)_(\d+)$")


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.lower())


def frequency_for(billing_cycle: BillingCycle) -> Tuple[int, str]:
    return FREQUENCY_MAP[BillingCycle(billing_cycle)]


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable provider timestamp: {value!r}")
        return None
    return utc_naive(parsed)


def build_state(user_id: int, now: Optional[float] = None) -> str:
    """OAuth state token: user_{userId}_{millis}."""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"user_{user_id}_{millis}"


def parse_state(state: Optional[str]) -> int:
    """
    Recover the user id from an OAuth state token.

    Raises:
        OAuthStateError: If the state does not have the expected shape
    """
    match = STATE_PATTERN.match(state or "")
    if not match:
        raise OAuthStateError()
    return int(match.group(1))


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int = 1,
    backoff_seconds: float = 0.5,
    **kwargs: Any,
) -> T:
    """
    Call a gateway method, retrying transient failures with backoff.

    WHY: Only ProviderUnavailable is retried. ProviderRejected is terminal
    and is raised on the first attempt.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except ProviderUnavailable as e:
            if attempt >= retries:
                raise
            attempt += 1
            delay = backoff_seconds * attempt
            logger.warning(
                f"Provider unavailable ({e.message}), retrying in {delay:.2f}s",
                extra={"attempt": attempt},
            )
            await asyncio.sleep(delay)


# ============================================================================
# Provider resources
# ============================================================================


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    scope: Optional[str]
    provider_user_id: str


@dataclass(frozen=True)
class ProviderSubscription:
    """A preapproval as seen at the provider."""

    id: str
    status: str
    last_modified: Optional[datetime]
    external_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def mapped_status(self) -> Optional[SubscriptionStatus]:
        return map_provider_status(self.status)


@dataclass(frozen=True)
class ProviderPayment:
    id: str
    status: str
    last_updated: Optional[datetime]
    external_reference: Optional[str]
    operation_type: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class StatusProbe:
    """Result of comparing provider status against the stored one."""

    provider_subscription_id: str
    provider_status: str
    mapped_status: Optional[SubscriptionStatus]
    stored_status: Optional[SubscriptionStatus]
    last_modified: Optional[datetime]

    @property
    def differs(self) -> bool:
        return self.mapped_status is not None and self.mapped_status != self.stored_status


# ============================================================================
# Gateway
# ============================================================================


class PaymentGateway:
    """
    Client for the MercadoPago REST API.

    Example:
        gateway = PaymentGateway(build_provider_config(), build_oauth_config())
        probe = await gateway.probe_subscription_status("2c93808...", SubscriptionStatus.ACTIVE)
    """

    def __init__(self, provider_config: ProviderConfig, oauth_config: OAuthConfig):
        self._provider = provider_config
        self._oauth = oauth_config

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the provider API.

        Args:
            method: HTTP method
            path: API path (e.g., /preapproval/123)
            access_token: Bearer token; omitted for the OAuth token endpoint
            json: JSON body
            data: Form body
            timeout: Override default timeout

        Returns:
            Parsed JSON response ({} for 204)

        Raises:
            ProviderUnavailable: On timeout, connection error or 5xx
            ProviderRejected: On 4xx
        """
        url = f"{self._provider.api_base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self._provider.timeout_seconds,
                follow_redirects=False,
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json,
                    data=data,
                )
        except httpx.TimeoutException:
            logger.warning(f"Provider request timed out: {method} {path}")
            raise ProviderUnavailable(
                message="Payment provider request timed out",
                endpoint=path,
                method=method,
            )
        except httpx.RequestError as e:
            logger.warning(f"Provider connection error: {method} {path}: {type(e).__name__}")
            raise ProviderUnavailable(
                message=f"Payment provider connection error: {type(e).__name__}",
                endpoint=path,
                method=method,
            )

        if response.status_code >= 500:
            logger.warning(f"Provider {response.status_code} on {method} {path}")
            raise ProviderUnavailable(
                message=f"Payment provider error: {self._parse_error_response(response)}",
                endpoint=path,
                method=method,
                provider_status=response.status_code,
            )

        if response.status_code >= 400:
            logger.info(f"Provider rejected {method} {path} with {response.status_code}")
            raise ProviderRejected(
                message=f"Payment provider rejected request: {self._parse_error_response(response)}",
                provider_status=response.status_code,
                endpoint=path,
                method=method,
            )

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    def _parse_error_response(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("message", "error_description", "error"):
                if body.get(key):
                    return str(body[key])
        return str(body)

    # ------------------------------------------------------------------
    # Marketplace OAuth
    # ------------------------------------------------------------------

    def _require_oauth(self) -> None:
        if not self._oauth.enabled:
            raise OAuthConfigurationError()

    def build_authorization_url(self, user_id: int, now: Optional[float] = None) -> Tuple[str, str]:
        """
        Build the provider consent URL for connecting a publisher account.

        Returns:
            Tuple of (authorization_url, state)

        Raises:
            OAuthConfigurationError: If marketplace credentials are missing
        """
        self._require_oauth()
        state = build_state(user_id, now)
        params = {
            "client_id": self._oauth.client_id,
            "response_type": "code",
            "platform_id": "mp",
            "redirect_uri": self._oauth.redirect_uri,
            "state": state,
        }
        url = f"{self._oauth.auth_base_url.rstrip('/')}/authorization?{urlencode(params)}"
        return url, state

    async def _token_request(self, form: Dict[str, str]) -> OAuthTokens:
        self._require_oauth()
        body = await self._request(
            "POST",
            "/oauth/token",
            data={
                "client_id": self._oauth.client_id,
                "client_secret": self._oauth.client_secret,
                **form,
            },
            timeout=self._oauth.timeout_seconds,
        )
        access_token = body.get("access_token")
        if not access_token:
            raise ProviderRejected(message="Provider token response had no access token")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            scope=body.get("scope"),
            provider_user_id=str(body.get("user_id", "")),
        )

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._oauth.redirect_uri,
        })

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """
        Obtain a new access token from a refresh token.

        WHY: Callers check for a stored refresh token first, so "no refresh
        token" never reaches the provider and stays distinguishable from a
        refresh the provider refused.
        """
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        """Fetch the profile of the account owning a token."""
        return await self._request(
            "GET",
            "/users/me",
            access_token=access_token,
            timeout=self._oauth.timeout_seconds,
        )

    async def validate_token(self, access_token: str) -> bool:
        """
        Check a token by fetching the owner's profile.

        Returns False when the provider refuses the token.

        Raises:
            ProviderUnavailable: If the provider cannot be reached; an outage
                says nothing about the token
        """
        try:
            await self.get_user_info(access_token)
            return True
        except ProviderRejected as e:
            logger.info(f"Provider rejected the token: {e.message}")
            return False

    # ------------------------------------------------------------------
    # Plan catalog
    # ------------------------------------------------------------------

    def build_plan_payload(self, plan: Any) -> Dict[str, Any]:
        frequency, frequency_type = frequency_for(plan.billing_cycle)
        return {
            "reason": f"Suscripción: {plan.name}",
            "auto_recurring": {
                "frequency": frequency,
                "frequency_type": frequency_type,
                "transaction_amount": float(plan.price),
                "currency_id": plan.currency,
            },
            "back_url": f"{self._provider.public_base_url.rstrip('/')}/subscription/complete",
            "external_reference": str(plan.id),
        }

    async def sync_plan(self, plan: Any) -> str:
        """
        Create or update the provider plan mirroring a catalog plan.

        WHY: The provider may refuse to update a plan that already has
        subscribers; in that case a new plan is created and its id replaces
        the old one. Transient failures are not turned into creates.

        Returns:
            The provider plan id now backing the catalog plan
        """
        payload = self.build_plan_payload(plan)
        token = self._provider.access_token

        if plan.provider_plan_id:
            try:
                body = await self._request(
                    "PUT",
                    f"/preapproval_plan/{plan.provider_plan_id}",
                    access_token=token,
                    json=payload,
                )
                return str(body.get("id") or plan.provider_plan_id)
            except ProviderRejected as e:
                logger.warning(
                    f"Provider refused plan update, creating a new plan: {e.message}",
                    extra={"plan_id": plan.id, "provider_plan_id": plan.provider_plan_id},
                )

        body = await self._request("POST", "/preapproval_plan", access_token=token, json=payload)
        provider_plan_id = body.get("id")
        if not provider_plan_id:
            raise ProviderRejected(message="Provider plan response had no id", plan_id=plan.id)
        return str(provider_plan_id)

    # ------------------------------------------------------------------
    # Subscriptions (preapprovals) and payments
    # ------------------------------------------------------------------

    async def get_subscription(self, provider_subscription_id: str) -> ProviderSubscription:
        body = await self._request(
            "GET",
            f"/preapproval/{provider_subscription_id}",
            access_token=self._provider.access_token,
        )
        return ProviderSubscription(
            id=str(body.get("id", provider_subscription_id)),
            status=str(body.get("status", "")),
            last_modified=parse_provider_datetime(
                body.get("last_modified") or body.get("date_created")
            ),
            external_reference=body.get("external_reference"),
            raw=body,
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> ProviderSubscription:
        """
        Cancel a preapproval at the provider.

        WHY: The provider is idempotent per resource, so cancelling twice is
        harmless. Callers decide whether a failure matters.
        """
        body = await self._request(
            "PUT",
            f"/preapproval/{provider_subscription_id}",
            access_token=self._provider.access_token,
            json={"status": "cancelled"},
        )
        logger.info(
            "Cancelled provider subscription",
            extra={"provider_subscription_id": provider_subscription_id},
        )
        return ProviderSubscription(
            id=str(body.get("id", provider_subscription_id)),
            status=str(body.get("status", "cancelled")),
            last_modified=parse_provider_datetime(body.get("last_modified")),
            external_reference=body.get("external_reference"),
            raw=body,
        )

    async def probe_subscription_status(
        self,
        provider_subscription_id: str,
        stored_status: Optional[SubscriptionStatus] = None,
    ) -> StatusProbe:
        """Fetch the provider status of a preapproval and compare it with ours."""
        remote = await self.get_subscription(provider_subscription_id)
        return StatusProbe(
            provider_subscription_id=remote.id,
            provider_status=remote.status,
            mapped_status=remote.mapped_status,
            stored_status=stored_status,
            last_modified=remote.last_modified,
        )

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        body = await self._request(
            "GET",
            f"/v1/payments/{payment_id}",
            access_token=self._provider.access_token,
        )
        return ProviderPayment(
            id=str(body.get("id", payment_id)),
            status=str(body.get("status", "")),
            last_updated=parse_provider_datetime(
                body.get("date_last_updated") or body.get("date_created")
            ),
            external_reference=body.get("external_reference"),
            operation_type=body.get("operation_type"),
            raw=body,
        )
