"""
Entitlement API endpoints.

WHAT: CheckUser and CheckPermission, the read path the marketplace calls on
every page render and before every create action.

WHY: Both endpoints always answer 200. Internal failures come back as a
fail-closed snapshot (no subscription, client role only) with an error
field, so a broken dependency can never grant access.
"""

import logging

from fastapi import APIRouter, Depends

from billing_sync.core.deps import get_entitlement_service
from billing_sync.schemas.entitlement import (
    CheckPermissionRequest,
    CheckUserRequest,
    EntitlementResponse,
    PermissionResponse,
)
from billing_sync.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


@router.post(
    "/check-user",
    response_model=EntitlementResponse,
    summary="Resolve a user's entitlements",
    description="Returns subscription status, roles and remaining quotas (cache-first).",
)
async def check_user(
    request: CheckUserRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    snapshot = await service.resolve(request.user_id)
    return EntitlementResponse.model_validate(snapshot)


@router.post(
    "/check-permission",
    response_model=PermissionResponse,
    summary="Check whether a user may perform an action",
    description="Actions: create_post, create_booking, publish.",
)
async def check_permission(
    request: CheckPermissionRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> PermissionResponse:
    """
    Decide a single action.

    Returns:
        allowed plus a user-facing reason when denied
    """
    decision = await service.check_permission(request.user_id, request.action.value)
    if not decision.allowed:
        logger.info(
            f"Permission denied for {request.action.value}: {decision.reason}",
            extra={"user_id": request.user_id},
        )
    return PermissionResponse(allowed=decision.allowed, reason=decision.reason)
