"""
User account endpoints.
"""

from fastapi import APIRouter, Depends

from billing_sync.core.deps import get_acting_user, get_teardown_service, require_same_user
from billing_sync.models.user import User
from billing_sync.schemas.subscription import DeleteAccountRequest, TeardownResponse
from billing_sync.services.teardown_service import TeardownService

router = APIRouter(prefix="/users", tags=["Users"])


@router.post(
    "/delete-account",
    response_model=TeardownResponse,
    summary="Delete own account",
    description="Removes subscriptions, content and the user identity.",
)
async def delete_account(
    request: DeleteAccountRequest,
    acting_user: User = Depends(get_acting_user),
    service: TeardownService = Depends(get_teardown_service),
) -> TeardownResponse:
    require_same_user(acting_user, request.user_id)
    manifest = await service.delete_account(request.user_id)
    return TeardownResponse.model_validate(manifest)
