"""
Provider-to-store subscription synchronization.

WHAT: Ingests provider webhooks, runs manual status checks, and reconciles
every open provider-linked subscription on a schedule.

WHY: The provider notifies at least once at best, out of order, and
sometimes not at all. Webhooks are the fast path; status checks and the
periodic reconciliation are the retry path for missed or failed deliveries.
All three apply changes through the same timestamp-guarded state machine,
so replays and late deliveries cannot regress a subscription.

HOW:
- preapproval events: fetch the preapproval, locate the record by provider id
  (or by external_reference, linking the id), apply the provider status
- payment events: fetch the payment, locate the record by
  external_reference = subscription_{planId}_{userId}, apply the payment outcome
- anything else: acknowledged and ignored
- after any applied change: recompute the user's roles
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import EntitlementConfig
from billing_sync.core.exceptions import (
    PaymentProviderError,
    SubscriptionNotFoundError,
    ValidationError,
)
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.models.subscription import UserSubscription
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.entitlement_service import EntitlementService
from billing_sync.services.payment_gateway import PaymentGateway, call_with_retry
from billing_sync.services.subscription_state import (
    SubscriptionStateMachine,
    TransitionOutcome,
    TransitionResult,
)

logger = logging.getLogger(__name__)

PREAPPROVAL_EVENTS = frozenset({"preapproval", "subscription_preapproval"})
PAYMENT_EVENTS = frozenset({"payment"})
EXTERNAL_REFERENCE_PATTERN = re.compile(r"^subscription_(\d+)_(\d+)$")


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: Optional[str]
    resource_id: Optional[str]
    outcome: str
    subscription_id: Optional[int] = None
    user_id: Optional[int] = None


@dataclass(frozen=True)
class StatusCheckResult:
    subscription_id: int
    provider_subscription_id: Optional[str]
    previous_status: str
    current_status: str
    provider_status: Optional[str]
    outcome: str
    error: Optional[str] = None


def parse_external_reference(reference: Optional[str]) -> Optional[tuple]:
    """Return (plan_id, user_id) from subscription_{planId}_{userId}, else None."""
    match = EXTERNAL_REFERENCE_PATTERN.match(reference or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


class SubscriptionSyncService:
    """
    Applies provider-side subscription state to the store.

    Args:
        session: Database session
        gateway: Provider gateway (plan-catalog credentials)
        cache: Entitlement cache
        config: Entitlement timing (backoff used for provider retries)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        cache: EntitlementCache,
        config: EntitlementConfig,
    ):
        self.session = session
        self.gateway = gateway
        self.cache = cache
        self.config = config
        self.subscriptions = UserSubscriptionDAO(session)
        self.state = SubscriptionStateMachine(
            session,
            gateway=gateway,
            cache=cache,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
        self.entitlements = EntitlementService(session, cache, gateway, config)

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_webhook(self, payload: Dict[str, Any]) -> WebhookOutcome:
        """
        Process one provider notification.

        Never raises for provider failures or unknown events: the delivery is
        acknowledged and reconciliation picks up whatever was missed.
        """
        payload = payload or {}
        event_type = payload.get("type") or payload.get("topic")
        data = payload.get("data") or {}
        resource_id = data.get("id") if isinstance(data, dict) else None
        resource_id = str(resource_id or payload.get("id") or "") or None

        if event_type not in PREAPPROVAL_EVENTS and event_type not in PAYMENT_EVENTS:
            logger.info(f"Ignoring webhook of type {event_type!r}")
            return WebhookOutcome(event_type, resource_id, "ignored")

        if not resource_id:
            logger.warning(f"Webhook {event_type!r} without a resource id")
            return WebhookOutcome(event_type, resource_id, "ignored")

        try:
            if event_type in PREAPPROVAL_EVENTS:
                return await self._handle_preapproval(event_type, resource_id)
            return await self._handle_payment(event_type, resource_id)
        except PaymentProviderError as e:
            await self.session.rollback()
            logger.error(
                f"Webhook processing failed, left for reconciliation: {e.message}",
                extra={"event_type": event_type, "resource_id": resource_id},
            )
            return WebhookOutcome(event_type, resource_id, "deferred")

    async def _handle_preapproval(self, event_type: str, provider_id: str) -> WebhookOutcome:
        remote = await call_with_retry(
            self.gateway.get_subscription,
            provider_id,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

        subscription = await self.subscriptions.get_by_provider_id(remote.id)
        if subscription is None:
            subscription = await self._link_by_reference(remote.id, remote.external_reference)
        if subscription is None:
            logger.warning(
                "Webhook for an unknown provider subscription",
                extra={"provider_subscription_id": remote.id},
            )
            return WebhookOutcome(event_type, provider_id, "unmatched")

        result = await self.state.apply_provider_update(
            subscription, remote.status, remote.last_modified, source="webhook"
        )
        await self._after_transition(result)
        return WebhookOutcome(
            event_type,
            provider_id,
            result.outcome.value,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
        )

    async def _handle_payment(self, event_type: str, payment_id: str) -> WebhookOutcome:
        payment = await call_with_retry(
            self.gateway.get_payment,
            payment_id,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

        reference = parse_external_reference(payment.external_reference)
        if reference is None:
            logger.info(
                "Payment is not a subscription payment, ignoring",
                extra={"payment_id": payment.id},
            )
            return WebhookOutcome(event_type, payment_id, "ignored")

        plan_id, user_id = reference
        subscription = await self.subscriptions.find_by_external_reference(plan_id, user_id)
        if subscription is None:
            subscription = await self._latest_active(plan_id, user_id)
        if subscription is None:
            logger.warning(
                "Payment for a subscription that is not in the store",
                extra={"payment_id": payment.id, "user_id": user_id, "plan_id": plan_id},
            )
            return WebhookOutcome(event_type, payment_id, "unmatched", user_id=user_id)

        result = await self.state.apply_payment_update(
            subscription, payment.status, payment.last_updated
        )
        await self._after_transition(result)
        return WebhookOutcome(
            event_type,
            payment_id,
            result.outcome.value,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
        )

    async def _latest_active(self, plan_id: int, user_id: int) -> Optional[UserSubscription]:
        for subscription in await self.subscriptions.get_active_for_user(user_id):
            if subscription.plan_id == plan_id:
                return subscription
        return None

    async def _link_by_reference(
        self,
        provider_id: str,
        external_reference: Optional[str],
    ) -> Optional[UserSubscription]:
        """Attach a provider id to the record the checkout flow created."""
        reference = parse_external_reference(external_reference)
        if reference is None:
            return None
        plan_id, user_id = reference
        subscription = await self.subscriptions.find_by_external_reference(plan_id, user_id)
        if subscription is None or subscription.provider_subscription_id:
            return None
        logger.info(
            "Linking provider subscription to stored record",
            extra={"subscription_id": subscription.id, "provider_subscription_id": provider_id},
        )
        return await self.subscriptions.update(subscription.id, provider_subscription_id=provider_id)

    async def _after_transition(self, result: TransitionResult) -> None:
        await self.session.commit()
        if result.outcome == TransitionOutcome.APPLIED:
            await self.entitlements.refresh_roles(result.subscription.user_id)
            await self.session.commit()

    # ========================================================================
    # Status checks and reconciliation
    # ========================================================================

    async def check_status(
        self,
        user_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
    ) -> List[StatusCheckResult]:
        """
        Probe the provider for one subscription or all of a user's.

        Raises:
            ValidationError: If neither id is given
            SubscriptionNotFoundError: If subscription_id does not exist or
                belongs to another user
        """
        if subscription_id is not None:
            subscription = await self.subscriptions.get_by_id(subscription_id)
            if subscription is None or (user_id is not None and subscription.user_id != user_id):
                raise SubscriptionNotFoundError(subscription_id=subscription_id)
            targets = [subscription]
        elif user_id is not None:
            targets = await self.subscriptions.get_provider_linked_for_user(user_id)
        else:
            raise ValidationError(message="userId or subscriptionId is required")

        results = [await self._check_one(subscription, source="manual") for subscription in targets]
        return results

    async def reconcile_all(self, limit: int = 200) -> Dict[str, int]:
        """
        Probe every open provider-linked subscription.

        A failure on one subscription is rolled back and counted as an error;
        the rest of the batch still runs.

        Returns:
            Counts per outcome plus "errors"
        """
        counts: Dict[str, int] = {"checked": 0, "errors": 0}
        # WHY: ids are captured first; a rollback inside a check expires rows.
        ids = [s.id for s in await self.subscriptions.list_reconcilable(limit)]
        for subscription_id in ids:
            subscription = await self.subscriptions.get_by_id(subscription_id)
            if subscription is None:
                continue
            counts["checked"] += 1
            try:
                result = await self._check_one(subscription, source="reconcile")
            except Exception:
                logger.exception(
                    "Reconciliation of one subscription failed, continuing",
                    extra={"subscription_id": subscription_id},
                )
                await self.session.rollback()
                counts["errors"] += 1
                continue
            if result.error:
                counts["errors"] += 1
            else:
                counts[result.outcome] = counts.get(result.outcome, 0) + 1
        logger.info(f"Subscription reconciliation finished: {counts}")
        return counts

    async def _check_one(self, subscription: UserSubscription, source: str) -> StatusCheckResult:
        subscription_id = subscription.id
        provider_id = subscription.provider_subscription_id
        previous = subscription.status

        if not provider_id:
            return StatusCheckResult(
                subscription_id, None, previous.value, previous.value, None, "unlinked"
            )

        try:
            probe = await call_with_retry(
                self.gateway.probe_subscription_status,
                provider_id,
                previous,
                backoff_seconds=self.config.retry_backoff_seconds,
            )
        except PaymentProviderError as e:
            logger.warning(
                f"Status check failed: {e.message}",
                extra={"subscription_id": subscription_id, "provider_subscription_id": provider_id},
            )
            return StatusCheckResult(
                subscription_id, provider_id, previous.value, previous.value, None,
                "error", error=type(e).__name__,
            )

        result = await self.state.apply_provider_update(
            subscription, probe.provider_status, probe.last_modified, source=source
        )
        await self.state.mark_checked(result.subscription)
        await self._after_transition(result)

        current = result.new_status or previous
        return StatusCheckResult(
            subscription_id,
            provider_id,
            previous.value,
            current.value,
            probe.provider_status,
            result.outcome.value,
        )
