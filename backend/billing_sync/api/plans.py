"""
Plan catalog sync endpoints.
"""

from fastapi import APIRouter, Depends

from billing_sync.core.deps import get_plan_sync_service, require_superadmin
from billing_sync.models.user import User
from billing_sync.schemas.plan import PlanResponse, PlanSyncAllResponse, PlanSyncFailure
from billing_sync.services.plan_sync_service import PlanSyncService

router = APIRouter(prefix="/plans", tags=["Plans"])


@router.post(
    "/sync",
    response_model=PlanSyncAllResponse,
    summary="Sync all active plans to the provider",
)
async def sync_all_plans(
    admin: User = Depends(require_superadmin),
    service: PlanSyncService = Depends(get_plan_sync_service),
) -> PlanSyncAllResponse:
    report = await service.sync_all()
    return PlanSyncAllResponse(
        synced=[PlanResponse.model_validate(plan) for plan in report.synced],
        failed=[PlanSyncFailure(plan_id=f["planId"], error=f["error"]) for f in report.failed],
    )


@router.post(
    "/{plan_id}/sync",
    response_model=PlanResponse,
    summary="Sync one plan to the provider",
)
async def sync_plan(
    plan_id: int,
    admin: User = Depends(require_superadmin),
    service: PlanSyncService = Depends(get_plan_sync_service),
) -> PlanResponse:
    """
    Raises:
        PlanNotFoundError: Unknown plan (404)
        ProviderUnavailable: Provider down after retry (503)
        ProviderRejected: Provider refused the plan (502)
    """
    plan = await service.sync_plan(plan_id)
    return PlanResponse.model_validate(plan)
