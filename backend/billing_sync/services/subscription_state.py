"""
Subscription state machine.

WHAT: The canonical statuses a subscription can hold, which transitions are
legal, and how provider-reported changes are applied to stored records.

WHY: Webhooks can arrive twice or out of order, probes and the reconcile job
can race with them, and user actions cancel records at any time. Funnelling
every status write through one place keeps these invariants true:
- terminal statuses (cancelled, expired) never change again
- a provider update is applied only if the provider's own timestamp is newer
  than the one already stored for the same kind of resource (preapproval
  or payment), so replays and late deliveries are discarded
- a user has at most one ACTIVE subscription (activation closes the others)

HOW:
    pending_payment -> on_hold -> active -> paused -> active
    any non-terminal -> cancelled | expired
    active -> active on renewal (only end_date moves)
"""

import calendar
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import InvalidStateTransitionError, PaymentProviderError
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.models.base import utcnow, utc_naive
from billing_sync.models.plan import BillingCycle
from billing_sync.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
)
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.payment_gateway import (
    PaymentGateway,
    call_with_retry,
    map_provider_status,
)

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    S.PENDING_PAYMENT: frozenset({S.ON_HOLD, S.ACTIVE, S.PAUSED, S.CANCELLED, S.EXPIRED}),
    S.ON_HOLD: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAUSED, S.CANCELLED, S.EXPIRED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

# Payment status -> what it means for the subscription it pays for
APPROVED_PAYMENT_STATUSES = frozenset({"approved", "authorized"})
PENDING_PAYMENT_STATUSES = frozenset({"pending", "in_process"})
FAILED_PAYMENT_STATUSES = frozenset({"rejected", "cancelled"})

# Preapprovals and payments have independent provider clocks; each is
# compared only with the last timestamp of its own kind
PREAPPROVAL_TIMESTAMP_FIELD = "provider_last_modified"
PAYMENT_TIMESTAMP_FIELD = "payment_last_updated"


class TransitionOutcome(str, enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    INVALID = "invalid"
    IGNORED = "ignored"


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    subscription: Optional[UserSubscription]
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None
    superseded_ids: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_period_end(billing_cycle: BillingCycle, start: datetime) -> datetime:
    """End of one billing period starting at ``start``."""
    cycle = BillingCycle(billing_cycle)
    if cycle == BillingCycle.DAILY:
        return start + timedelta(days=1)
    if cycle == BillingCycle.WEEKLY:
        return start + timedelta(days=7)
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


class SubscriptionStateMachine:
    """
    Applies status changes to subscription records.

    Args:
        session: Database session
        gateway: Used to cancel superseded subscriptions at the provider
        cache: Entitlement cache invalidated after every applied change;
            None when the caller recomputes entitlements itself
        retry_backoff_seconds: Backoff for the single provider retry
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        cache: Optional[EntitlementCache] = None,
        retry_backoff_seconds: float = 0.5,
    ):
        self.session = session
        self.dao = UserSubscriptionDAO(session)
        self.gateway = gateway
        self.cache = cache
        self.retry_backoff_seconds = retry_backoff_seconds

    # ------------------------------------------------------------------
    # Provider-driven updates (webhooks, probes, reconciliation)
    # ------------------------------------------------------------------

    async def apply_provider_update(
        self,
        subscription: UserSubscription,
        provider_status: Optional[str],
        provider_timestamp: Optional[datetime],
        source: str = "webhook",
    ) -> TransitionResult:
        """
        Apply a preapproval status reported by the provider.

        Args:
            subscription: Stored record
            provider_status: Raw provider status (e.g. "authorized")
            provider_timestamp: Provider's last-modified time for the resource
            source: webhook, probe or reconcile (for logs)

        Returns:
            TransitionResult; never raises for stale or invalid updates
        """
        target = map_provider_status(provider_status)
        if target is None:
            logger.info(
                f"Ignoring unknown provider status {provider_status!r} from {source}",
                extra={"subscription_id": subscription.id},
            )
            return TransitionResult(TransitionOutcome.IGNORED, subscription, subscription.status)

        return await self._guarded_apply(
            subscription,
            target,
            provider_timestamp,
            provider_status=provider_status,
            source=source,
        )

    async def apply_payment_update(
        self,
        subscription: UserSubscription,
        payment_status: Optional[str],
        payment_timestamp: Optional[datetime],
    ) -> TransitionResult:
        """
        Apply a recurring payment outcome to the subscription it pays for.

        - approved: activates a pending/on-hold subscription, renews an active one
        - pending/in_process: moves pending_payment to on_hold
        - rejected/cancelled: cancels a subscription that never became active
        """
        status = (payment_status or "").lower()
        current = subscription.status

        if status in APPROVED_PAYMENT_STATUSES:
            if current == S.ACTIVE:
                return await self._guarded_apply(
                    subscription,
                    S.ACTIVE,
                    payment_timestamp,
                    source="payment",
                    renew=True,
                    timestamp_field=PAYMENT_TIMESTAMP_FIELD,
                )
            target = S.ACTIVE
        elif status in PENDING_PAYMENT_STATUSES:
            if current != S.PENDING_PAYMENT:
                return TransitionResult(TransitionOutcome.UNCHANGED, subscription, current, current)
            target = S.ON_HOLD
        elif status in FAILED_PAYMENT_STATUSES:
            if current not in (S.PENDING_PAYMENT, S.ON_HOLD):
                return TransitionResult(TransitionOutcome.UNCHANGED, subscription, current, current)
            target = S.CANCELLED
        else:
            logger.info(
                f"Ignoring payment status {payment_status!r}",
                extra={"subscription_id": subscription.id},
            )
            return TransitionResult(TransitionOutcome.IGNORED, subscription, current)

        return await self._guarded_apply(
            subscription,
            target,
            payment_timestamp,
            source="payment",
            timestamp_field=PAYMENT_TIMESTAMP_FIELD,
        )

    async def _guarded_apply(
        self,
        subscription: UserSubscription,
        target: SubscriptionStatus,
        provider_timestamp: Optional[datetime],
        provider_status: Optional[str] = None,
        source: str = "webhook",
        renew: bool = False,
        timestamp_field: str = PREAPPROVAL_TIMESTAMP_FIELD,
    ) -> TransitionResult:
        current = subscription.status
        incoming = utc_naive(provider_timestamp)
        stored = getattr(subscription, timestamp_field)

        if incoming is not None and stored is not None and incoming <= stored:
            logger.info(
                f"Discarding {source} update to {target.value}: provider timestamp "
                f"{incoming.isoformat()} is not newer than {stored.isoformat()}",
                extra={"subscription_id": subscription.id},
            )
            return TransitionResult(TransitionOutcome.STALE, subscription, current, current)

        fields: Dict[str, Any] = {}
        if incoming is not None:
            fields[timestamp_field] = incoming
        if provider_status:
            fields["provider_status"] = provider_status

        if target == current and not renew:
            if fields:
                subscription = await self.dao.update(subscription.id, **fields)
            return TransitionResult(TransitionOutcome.UNCHANGED, subscription, current, current)

        if not can_transition(current, target):
            logger.warning(
                f"Rejected {source} transition {current.value} -> {target.value}",
                extra={"subscription_id": subscription.id},
            )
            return TransitionResult(TransitionOutcome.INVALID, subscription, current, current)

        now = utcnow()
        superseded: List[int] = []

        if renew:
            period_start = max(subscription.end_date or now, now)
            fields["end_date"] = next_period_end(subscription.billing_cycle, period_start)
        elif target == S.ACTIVE:
            superseded = await self._close_other_active(subscription)
            start = subscription.start_date or now
            fields["start_date"] = start
            fields["end_date"] = next_period_end(subscription.billing_cycle, max(start, now))
        elif target in TERMINAL_STATUSES:
            fields["end_date"] = now

        fields["status"] = target
        updated = await self.dao.update(subscription.id, **fields)
        logger.info(
            f"Subscription {current.value} -> {target.value} via {source}",
            extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
        )
        self._invalidate(subscription.user_id)
        return TransitionResult(TransitionOutcome.APPLIED, updated, current, target, superseded)

    async def mark_checked(self, subscription: UserSubscription) -> None:
        await self.dao.update(subscription.id, status_checked_at=utcnow())

    # ------------------------------------------------------------------
    # Explicit actions (plan change, unsubscribe)
    # ------------------------------------------------------------------

    async def cancel(
        self,
        subscription: UserSubscription,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Cancel a subscription in the store.

        WHY: Any non-terminal status may be cancelled. Cancelling a record
        that is already terminal is a no-op so retried operations succeed.
        """
        current = subscription.status
        if subscription.is_terminal:
            return TransitionResult(TransitionOutcome.UNCHANGED, subscription, current, current)

        updated = await self.dao.merge_metadata(
            subscription,
            metadata or {},
            status=S.CANCELLED,
            end_date=utcnow(),
        )
        logger.info(
            f"Subscription {current.value} -> cancelled",
            extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
        )
        self._invalidate(subscription.user_id)
        return TransitionResult(TransitionOutcome.APPLIED, updated, current, S.CANCELLED)

    async def activate(
        self,
        subscription: UserSubscription,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Activate a subscription with a fresh start date.

        Raises:
            InvalidStateTransitionError: If the subscription is terminal
        """
        current = subscription.status
        if not can_transition(current, S.ACTIVE):
            raise InvalidStateTransitionError(
                message=f"Cannot activate a {current.value} subscription",
                subscription_id=subscription.id,
                status=current.value,
            )

        superseded = await self._close_other_active(subscription)
        now = utcnow()
        updated = await self.dao.merge_metadata(
            subscription,
            metadata or {},
            status=S.ACTIVE,
            start_date=now,
            end_date=next_period_end(subscription.billing_cycle, now),
        )
        logger.info(
            f"Subscription {current.value} -> active",
            extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
        )
        self._invalidate(subscription.user_id)
        return TransitionResult(TransitionOutcome.APPLIED, updated, current, S.ACTIVE, superseded)

    async def _close_other_active(self, subscription: UserSubscription) -> List[int]:
        """
        Cancel every other ACTIVE subscription of the same user.

        WHY: Keeps "at most one active subscription per user" true even when
        the provider authorizes a new preapproval before the plan change that
        retires the old one has run.
        """
        superseded = []
        for other in await self.dao.get_active_for_user(subscription.user_id):
            if other.id == subscription.id:
                continue
            await self.dao.merge_metadata(
                other,
                {
                    "cancelledAt": utcnow().isoformat(),
                    "cancelReason": "Superseded",
                    "supersededBy": subscription.id,
                },
                status=S.CANCELLED,
                end_date=utcnow(),
            )
            superseded.append(other.id)
            logger.warning(
                "Closed superseded active subscription",
                extra={"subscription_id": other.id, "superseded_by": subscription.id},
            )
            await self._cancel_at_provider(other.provider_subscription_id)
        return superseded

    async def _cancel_at_provider(self, provider_subscription_id: Optional[str]) -> bool:
        if not provider_subscription_id or self.gateway is None:
            return False
        try:
            await call_with_retry(
                self.gateway.cancel_subscription,
                provider_subscription_id,
                backoff_seconds=self.retry_backoff_seconds,
            )
            return True
        except PaymentProviderError as e:
            logger.error(
                f"Provider cancellation failed, left for reconciliation: {e.message}",
                extra={"provider_subscription_id": provider_subscription_id},
            )
            return False

    def _invalidate(self, user_id: int) -> None:
        if self.cache is not None:
            self.cache.invalidate(user_id)
