"""
Plan change orchestration.

WHAT: Moves a user from one subscription to another: cancel the old one at the
provider, close it in the store, activate the new one.

WHY: Provider and store share no transaction, so the change runs as a saga
with persisted progress (see saga.py). Steps are never rolled back:
- step 1 (provider cancel) is best-effort; a failure is logged and left for
  reconciliation so an unreachable provider cannot block the user
- step 2 (close old) failing aborts before anything is activated, so the user
  is never billed for two active plans
- step 3 (activate new) failing after step 2 leaves the user without an active
  plan; progress records step 2 as done and calling change_plan again with the
  same ids resumes at step 3

The window between step 2 and step 3 is a known zero-active gap awaiting a
product decision; it is narrowed by validating the new subscription before
step 1 runs.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import EntitlementConfig
from billing_sync.core.exceptions import (
    AuthorizationError,
    InvalidStateTransitionError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    ValidationError,
)
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.models.base import utcnow
from billing_sync.models.subscription import UserSubscription, SubscriptionStatus
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.payment_gateway import PaymentGateway, call_with_retry
from billing_sync.services.saga import SagaRunner, SagaStep
from billing_sync.services.subscription_state import SubscriptionStateMachine, can_transition

logger = logging.getLogger(__name__)

OPERATION_KIND = "change_plan"


@dataclass(frozen=True)
class PlanChangeResult:
    old_subscription_id: int
    new_subscription_id: int
    new_plan_name: str
    provider_cancelled: bool = True


class PlanChangeService:
    """
    Coordinates swapping a user's active subscription.

    Example:
        service = PlanChangeService(session, gateway, cache, config)
        result = await service.change_plan(user_id=7, old_subscription_id=12,
                                           new_subscription_id="2c9380...")
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
        self.saga = SagaRunner(session)

    @staticmethod
    def operation_id(user_id: int, old_id: int, new_id: int) -> str:
        return f"{OPERATION_KIND}:{user_id}:{old_id}:{new_id}"

    async def change_plan(
        self,
        user_id: int,
        old_subscription_id: Union[int, str],
        new_subscription_id: Union[int, str],
    ) -> PlanChangeResult:
        """
        Replace a user's old subscription with a new one.

        Args:
            user_id: Caller; must own both subscriptions
            old_subscription_id: Internal id of the subscription being replaced
            new_subscription_id: Internal id or provider preapproval id of the
                replacement (created by the checkout flow)

        Returns:
            PlanChangeResult

        Raises:
            ValidationError: Missing ids, or both ids name the same record
            SubscriptionNotFoundError: Either subscription does not exist
            AuthorizationError: Either subscription belongs to someone else
            InvalidStateTransitionError: The new subscription is terminal
        """
        if not user_id or not old_subscription_id or not new_subscription_id:
            raise ValidationError(message="userId, oldSubscriptionId and newSubscriptionId are required")

        old = await self._find(old_subscription_id)
        if old is None:
            raise SubscriptionNotFoundError(
                message="Old subscription not found",
                subscription_id=str(old_subscription_id),
            )
        new = await self._find_with_retry(new_subscription_id)

        if old.user_id != user_id or new.user_id != user_id:
            logger.warning(
                "Plan change ownership mismatch",
                extra={"user_id": user_id, "old_id": old.id, "new_id": new.id},
            )
            raise AuthorizationError(message="Subscription does not belong to this user")

        if old.id == new.id:
            raise ValidationError(message="Old and new subscription must differ")

        operation_id = self.operation_id(user_id, old.id, new.id)
        progress = await self.saga.load(operation_id)
        if progress is not None and progress.is_completed:
            return self._result_from(progress.context, old, new)

        furthest = progress.furthest_step if progress is not None else 0
        if furthest < 3 and not can_transition(new.status, SubscriptionStatus.ACTIVE):
            raise InvalidStateTransitionError(
                message=f"New subscription is {new.status.value} and cannot be activated",
                subscription_id=new.id,
            )

        old_plan_name = old.plan_name
        steps = [
            SagaStep("cancel_old_at_provider", lambda: self._cancel_old_at_provider(old)),
            SagaStep("close_old_subscription", lambda: self._close_old(old, new.id)),
            SagaStep("activate_new_subscription", lambda: self._activate_new(new, old.id, old_plan_name)),
        ]

        try:
            progress = await self.saga.run(
                operation_id,
                OPERATION_KIND,
                steps,
                user_id=user_id,
                context={
                    "oldSubscriptionId": old.id,
                    "newSubscriptionId": new.id,
                    "newPlanName": new.plan_name,
                },
            )
        finally:
            self.cache.invalidate(user_id)

        logger.info(
            "Plan changed",
            extra={"user_id": user_id, "old_id": old.id, "new_id": new.id},
        )
        return self._result_from(progress.context, old, new)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _cancel_old_at_provider(self, old: UserSubscription) -> Dict[str, Any]:
        if not old.provider_subscription_id:
            return {"providerCancelled": True}
        try:
            await call_with_retry(
                self.gateway.cancel_subscription,
                old.provider_subscription_id,
                backoff_seconds=self.config.retry_backoff_seconds,
            )
            return {"providerCancelled": True}
        except PaymentProviderError as e:
            logger.error(
                f"Could not cancel old subscription at provider, continuing: {e.message}",
                extra={
                    "subscription_id": old.id,
                    "provider_subscription_id": old.provider_subscription_id,
                },
            )
            return {"providerCancelled": False, "providerCancelError": type(e).__name__}

    async def _close_old(self, old: UserSubscription, new_id: int) -> None:
        await self.state.cancel(
            old,
            metadata={
                "cancelledAt": utcnow().isoformat(),
                "cancelReason": "Plan changed",
                "newSubscriptionId": new_id,
            },
        )

    async def _activate_new(self, new: UserSubscription, old_id: int, old_plan_name: str) -> None:
        await self.state.activate(
            new,
            metadata={
                "activatedAt": utcnow().isoformat(),
                "previousSubscriptionId": old_id,
                "upgradedFrom": old_plan_name,
            },
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _find(self, subscription_id: Union[int, str]) -> Optional[UserSubscription]:
        """Look up by internal id, falling back to the provider id."""
        text = str(subscription_id).strip()
        if text.isdigit():
            found = await self.subscriptions.get_by_id(int(text))
            if found is not None:
                return found
        return await self.subscriptions.get_by_provider_id(text)

    async def _find_with_retry(self, subscription_id: Union[int, str]) -> UserSubscription:
        """
        Find the new subscription, retrying once after a short delay.

        WHY: The checkout flow creates the record just before calling us and
        the write may not be visible yet.
        """
        found = await self._find(subscription_id)
        if found is None:
            logger.info(
                "New subscription not visible yet, retrying lookup",
                extra={"subscription_id": str(subscription_id)},
            )
            await asyncio.sleep(self.config.lookup_retry_delay_seconds)
            found = await self._find(subscription_id)
        if found is None:
            raise SubscriptionNotFoundError(
                message="New subscription not found",
                subscription_id=str(subscription_id),
            )
        return found

    @staticmethod
    def _result_from(
        context: Optional[Dict[str, Any]],
        old: UserSubscription,
        new: UserSubscription,
    ) -> PlanChangeResult:
        context = context or {}
        return PlanChangeResult(
            old_subscription_id=context.get("oldSubscriptionId", old.id),
            new_subscription_id=context.get("newSubscriptionId", new.id),
            new_plan_name=context.get("newPlanName", new.plan_name),
            provider_cancelled=context.get("providerCancelled", True),
        )
