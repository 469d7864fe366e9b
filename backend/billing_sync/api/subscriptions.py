"""
Subscription API endpoints.

WHAT: Plan change, unsubscribe and manual provider status checks.

Endpoints:
1. POST /subscriptions/change-plan - Swap the active subscription for a new one
2. POST /subscriptions/unsubscribe - Cancel and remove subscriptions and content
3. POST /subscriptions/check-status - Probe the provider and apply differences
"""

import logging

from fastapi import APIRouter, Depends

from billing_sync.core.deps import (
    get_acting_user,
    get_plan_change_service,
    get_subscription_sync_service,
    get_teardown_service,
    require_same_user,
)
from billing_sync.models.user import User
from billing_sync.schemas.subscription import (
    ChangePlanRequest,
    ChangePlanResponse,
    CheckStatusRequest,
    CheckStatusResponse,
    StatusCheckItem,
    TeardownResponse,
    UnsubscribeRequest,
)
from billing_sync.services.plan_change_service import PlanChangeService
from billing_sync.services.subscription_sync_service import SubscriptionSyncService
from billing_sync.services.teardown_service import TeardownService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.post(
    "/change-plan",
    response_model=ChangePlanResponse,
    summary="Change plan",
    description="Cancels the old subscription and activates the new one. Safe to retry.",
)
async def change_plan(
    request: ChangePlanRequest,
    acting_user: User = Depends(get_acting_user),
    service: PlanChangeService = Depends(get_plan_change_service),
) -> ChangePlanResponse:
    """
    Change a user's plan.

    WHY: Progress is stored per (user, old, new); a retried request resumes
    where the failed one stopped instead of repeating provider calls.

    Raises:
        AuthorizationError: userId is not the caller, or either subscription
            belongs to another user (403)
        SubscriptionNotFoundError: Either subscription is missing (404)
    """
    require_same_user(acting_user, request.user_id)
    result = await service.change_plan(
        request.user_id,
        request.old_subscription_id,
        request.new_subscription_id,
    )
    return ChangePlanResponse(
        old_subscription_id=result.old_subscription_id,
        new_subscription_id=result.new_subscription_id,
        new_plan_name=result.new_plan_name,
        provider_cancelled=result.provider_cancelled,
    )


@router.post(
    "/unsubscribe",
    response_model=TeardownResponse,
    summary="Unsubscribe",
    description="Cancels subscriptions and removes the user's content; the user stays a client.",
)
async def unsubscribe(
    request: UnsubscribeRequest,
    acting_user: User = Depends(get_acting_user),
    service: TeardownService = Depends(get_teardown_service),
) -> TeardownResponse:
    """
    Returns:
        Manifest of deleted counts; partialFailure is set when a step failed
    """
    require_same_user(acting_user, request.user_id)
    manifest = await service.unsubscribe(
        request.user_id,
        subscription_id=request.subscription_id,
        provider_subscription_id=request.provider_subscription_id,
    )
    return TeardownResponse.model_validate(manifest)


@router.post(
    "/check-status",
    response_model=CheckStatusResponse,
    summary="Check subscription status at the provider",
)
async def check_status(
    request: CheckStatusRequest,
    acting_user: User = Depends(get_acting_user),
    service: SubscriptionSyncService = Depends(get_subscription_sync_service),
) -> CheckStatusResponse:
    """
    Probe the caller's subscriptions.

    A subscriptionId alone is looked up among the caller's subscriptions.
    """
    if request.user_id is not None:
        require_same_user(acting_user, request.user_id)
    results = await service.check_status(
        user_id=acting_user.id,
        subscription_id=request.subscription_id,
    )
    items = [StatusCheckItem.model_validate(result) for result in results]
    return CheckStatusResponse(
        results=items,
        updated=sum(1 for item in items if item.outcome == "applied"),
    )
