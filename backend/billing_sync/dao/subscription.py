"""
User subscription data access.

WHY: Subscription queries encode the invariants the orchestrators rely on:
- "active" is decided by filtering on status alone
- the most recent provider-linked subscription is the one worth probing
- terminal subscriptions are never returned as reconciliation candidates
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    ENTITLED_STATUSES,
)


class UserSubscriptionDAO(BaseDAO[UserSubscription]):
    """Data access for user subscriptions."""

    def __init__(self, session: AsyncSession):
        super().__init__(UserSubscription, session)

    async def get_by_provider_id(self, provider_subscription_id: str) -> Optional[UserSubscription]:
        """Find the record linked to a provider preapproval id."""
        return await self.get_by_field("provider_subscription_id", provider_subscription_id)

    async def get_active_for_user(self, user_id: int) -> List[UserSubscription]:
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(UserSubscription.id.desc())
        )
        return list(result.scalars().all())

    async def get_entitled_for_user(self, user_id: int) -> Optional[UserSubscription]:
        """
        The subscription currently granting access, if any.

        WHY: ACTIVE wins over ON_HOLD so quotas come from the plan the user
        is actually paying for.
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status.in_(ENTITLED_STATUSES),
            )
            .order_by(UserSubscription.id.desc())
        )
        candidates = list(result.scalars().all())
        for subscription in candidates:
            if subscription.status == SubscriptionStatus.ACTIVE:
                return subscription
        return candidates[0] if candidates else None

    async def get_latest_provider_linked(self, user_id: int) -> Optional[UserSubscription]:
        """Most recent non-terminal subscription that exists at the provider."""
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.provider_subscription_id.is_not(None),
                UserSubscription.status.not_in(TERMINAL_STATUSES),
            )
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_provider_linked_for_user(self, user_id: int) -> List[UserSubscription]:
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.provider_subscription_id.is_not(None),
            )
            .order_by(UserSubscription.id.desc())
        )
        return list(result.scalars().all())

    async def find_by_external_reference(
        self,
        plan_id: int,
        user_id: int,
    ) -> Optional[UserSubscription]:
        """
        Locate the newest non-terminal subscription for a plan and user.

        WHY: Recurring payments only carry ``subscription_{planId}_{userId}``,
        not the preapproval id.
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.plan_id == plan_id,
                UserSubscription.status.not_in(TERMINAL_STATUSES),
            )
            .order_by(UserSubscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_reconcilable(self, limit: int = 200) -> List[UserSubscription]:
        """Non-terminal provider-linked subscriptions, least recently checked first."""
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.provider_subscription_id.is_not(None),
                UserSubscription.status.not_in(TERMINAL_STATUSES),
            )
            .order_by(
                UserSubscription.status_checked_at.is_not(None),
                UserSubscription.status_checked_at,
                UserSubscription.id,
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_active(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        return int(result.scalar_one())

    async def merge_metadata(
        self,
        subscription: UserSubscription,
        values: Dict[str, Any],
        **fields: Any,
    ) -> Optional[UserSubscription]:
        """
        Update fields and merge keys into the metadata document.

        WHY: JSON columns are not mutation-tracked, so the merged document is
        written back as a new dict together with the other field changes.
        """
        merged = dict(subscription.extra_data or {})
        merged.update(values)
        return await self.update(subscription.id, extra_data=merged, **fields)
