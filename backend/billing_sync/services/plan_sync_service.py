"""
Plan catalog synchronization.

WHAT: Mirrors catalog plans to provider preapproval plans and stores the
returned provider plan id on the catalog entry.

WHY: Checkout links point at provider plans. A catalog plan without a
provider plan id cannot be subscribed to.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import PaymentProviderError, PlanNotFoundError
from billing_sync.dao.plan import SubscriptionPlanDAO
from billing_sync.models.plan import SubscriptionPlan
from billing_sync.services.payment_gateway import PaymentGateway, call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class PlanSyncReport:
    synced: List[SubscriptionPlan] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)


class PlanSyncService:
    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        retry_backoff_seconds: float = 0.5,
    ):
        self.session = session
        self.gateway = gateway
        self.retry_backoff_seconds = retry_backoff_seconds
        self.plans = SubscriptionPlanDAO(session)

    async def sync_plan(self, plan_id: int) -> SubscriptionPlan:
        """
        Push one plan to the provider.

        Raises:
            PlanNotFoundError: If the plan does not exist
            ProviderUnavailable / ProviderRejected: If the provider call fails
        """
        plan = await self.plans.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id=plan_id)
        return await self._sync(plan)

    async def sync_all(self) -> PlanSyncReport:
        """Push every active plan, continuing past individual failures."""
        report = PlanSyncReport()
        for plan in await self.plans.get_active_plans():
            try:
                report.synced.append(await self._sync(plan))
            except PaymentProviderError as e:
                logger.error(
                    f"Plan sync failed: {e.message}",
                    extra={"plan_id": plan.id},
                )
                report.failed.append({"planId": plan.id, "error": e.message})
        logger.info(f"Plan sync finished: {len(report.synced)} synced, {len(report.failed)} failed")
        return report

    async def _sync(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        provider_plan_id = await call_with_retry(
            self.gateway.sync_plan,
            plan,
            backoff_seconds=self.retry_backoff_seconds,
        )
        updated = await self.plans.update(plan.id, provider_plan_id=provider_plan_id)
        logger.info(
            "Plan synchronized",
            extra={"plan_id": plan.id, "provider_plan_id": provider_plan_id},
        )
        return updated
