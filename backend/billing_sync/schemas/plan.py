"""
Plan catalog sync schemas.
"""

from typing import List, Optional

from billing_sync.models.plan import BillingCycle
from billing_sync.schemas.common import CamelModel


class PlanResponse(CamelModel):
    id: int
    name: str
    price: float
    currency: str
    billing_cycle: BillingCycle
    max_posts: int
    max_bookings: int
    is_active: bool
    is_visible: bool
    provider_plan_id: Optional[str] = None
    is_synchronized: bool = False


class PlanSyncFailure(CamelModel):
    plan_id: int
    error: str


class PlanSyncAllResponse(CamelModel):
    synced: List[PlanResponse]
    failed: List[PlanSyncFailure]
