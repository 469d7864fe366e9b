"""
Entitlement schemas.

WHAT: Request/response models for CheckUser and CheckPermission.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from billing_sync.schemas.common import CamelModel
from billing_sync.services.entitlement_service import PermissionAction


class CheckUserRequest(CamelModel):
    user_id: int = Field(gt=0)


class SubscriptionSummaryResponse(CamelModel):
    id: int
    plan_id: Optional[int] = None
    plan_name: str
    status: str
    end_date: Optional[datetime] = None


class EntitlementResponse(CamelModel):
    """
    Entitlement snapshot.

    WHY: possibly_stale tells the caller the answer came from the last known
    value (or the store alone) because the provider did not answer in time.
    """

    user_id: int
    has_active_subscription: bool
    roles: List[str]
    remaining_posts: int
    remaining_bookings: int
    subscription: Optional[SubscriptionSummaryResponse] = None
    has_provider_account: bool = False
    possibly_stale: bool = False
    computed_at: datetime
    error: Optional[str] = None


class CheckPermissionRequest(CamelModel):
    user_id: int = Field(gt=0)
    action: PermissionAction


class PermissionResponse(CamelModel):
    allowed: bool
    reason: Optional[str] = None
