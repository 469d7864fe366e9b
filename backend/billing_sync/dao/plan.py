"""
Subscription plan catalog data access.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.plan import SubscriptionPlan


class SubscriptionPlanDAO(BaseDAO[SubscriptionPlan]):
    """Data access for catalog plans."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlan, session)

    async def get_active_plans(self) -> List[SubscriptionPlan]:
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.id)
        )
        return list(result.scalars().all())
