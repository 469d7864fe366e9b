"""
Admin API endpoints.

WHAT: Manual role edits and account removal on behalf of a user.

SECURITY (OWASP A01):
- Every route requires an acting superadmin (require_superadmin)
- Superadmin targets cannot be removed through this API
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.deps import (
    get_entitlement_service,
    get_teardown_service,
    require_superadmin,
)
from billing_sync.core.exceptions import AuthorizationError
from billing_sync.dao.user import RoleAssignmentDAO
from billing_sync.db.session import get_db
from billing_sync.models.user import RoleName, User
from billing_sync.schemas.admin import RoleChangeRequest, RoleChangeResponse, RoleOperation
from billing_sync.schemas.subscription import TeardownResponse
from billing_sync.services.entitlement_service import EntitlementService
from billing_sync.services.teardown_service import TeardownService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post(
    "/users/{user_id}/roles",
    response_model=RoleChangeResponse,
    summary="Assign or remove a role",
)
async def change_user_role(
    user_id: int,
    request: RoleChangeRequest,
    admin: User = Depends(require_superadmin),
    service: EntitlementService = Depends(get_entitlement_service),
) -> RoleChangeResponse:
    roles, changed = await service.change_role(
        user_id,
        request.role,
        assign=request.operation == RoleOperation.ASSIGN,
        assigned_by=f"admin:{admin.id}",
    )
    return RoleChangeResponse(user_id=user_id, roles=roles, changed=changed)


@router.delete(
    "/users/{user_id}",
    response_model=TeardownResponse,
    summary="Remove a user",
    description="Deletes a user and everything they own.",
)
async def remove_user(
    user_id: int,
    admin: User = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    service: TeardownService = Depends(get_teardown_service),
) -> TeardownResponse:
    """
    Raises:
        AuthorizationError: If the target is a superadmin or the caller (403)
        UserNotFoundError: If the target does not exist (404)
    """
    if user_id == admin.id:
        raise AuthorizationError(message="Use the account deletion flow to remove yourself")

    target_roles = await RoleAssignmentDAO(db).get_active_role_names(user_id)
    if RoleName.SUPERADMIN in target_roles:
        raise AuthorizationError(message="Superadmin accounts cannot be removed", user_id=user_id)

    logger.info(
        "Admin removing user",
        extra={"user_id": user_id, "admin_id": admin.id},
    )
    manifest = await service.delete_account(user_id)
    return TeardownResponse.model_validate(manifest)
