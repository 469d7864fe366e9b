"""
FastAPI dependencies for shared services and caller identification.

WHY: Dependencies provide reusable wiring that can be injected into route
handlers. Process-wide collaborators (entitlement cache, provider gateway,
identity client, timing config) are created once in create_app and kept on
app.state; per-request services are built around the request's session.

Caller identity: this service sits behind the marketplace's API gateway,
which authenticates users and forwards the caller's internal id in the
X-Acting-User-Id header. Self-service routes require the user they name to be
that caller. Routes that act on behalf of another user
(admin operations) require that caller to hold the superadmin role.
"""

from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import EntitlementConfig, settings
from billing_sync.core.exceptions import AuthenticationError, AuthorizationError
from billing_sync.dao.user import RoleAssignmentDAO, UserDAO
from billing_sync.db.session import get_db
from billing_sync.models.user import RoleName, User
from billing_sync.services.encryption_service import EncryptionService
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.entitlement_service import EntitlementService
from billing_sync.services.identity_client import IdentityProviderClient
from billing_sync.services.payment_gateway import PaymentGateway
from billing_sync.services.plan_change_service import PlanChangeService
from billing_sync.services.plan_sync_service import PlanSyncService
from billing_sync.services.provider_account_service import ProviderAccountService
from billing_sync.services.subscription_sync_service import SubscriptionSyncService
from billing_sync.services.teardown_service import TeardownService


# ============================================================================
# Process-wide collaborators (app.state)
# ============================================================================


def get_entitlement_cache(request: Request) -> EntitlementCache:
    return request.app.state.entitlement_cache


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_identity_client(request: Request) -> IdentityProviderClient:
    return request.app.state.identity_client


def get_entitlement_config(request: Request) -> EntitlementConfig:
    return request.app.state.entitlement_config


def get_encryption_service() -> EncryptionService:
    """
    Raises:
        EncryptionError: If ENCRYPTION_KEY is missing or malformed (500)
    """
    return EncryptionService(settings.ENCRYPTION_KEY)


# ============================================================================
# Per-request services
# ============================================================================


def get_entitlement_service(
    db: AsyncSession = Depends(get_db),
    cache: EntitlementCache = Depends(get_entitlement_cache),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> EntitlementService:
    return EntitlementService(db, cache, gateway, config)


def get_plan_change_service(
    db: AsyncSession = Depends(get_db),
    cache: EntitlementCache = Depends(get_entitlement_cache),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> PlanChangeService:
    return PlanChangeService(db, gateway, cache, config)


def get_teardown_service(
    db: AsyncSession = Depends(get_db),
    cache: EntitlementCache = Depends(get_entitlement_cache),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: EntitlementConfig = Depends(get_entitlement_config),
    identity_client: IdentityProviderClient = Depends(get_identity_client),
) -> TeardownService:
    return TeardownService(db, gateway, cache, config, identity_client)


def get_subscription_sync_service(
    db: AsyncSession = Depends(get_db),
    cache: EntitlementCache = Depends(get_entitlement_cache),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> SubscriptionSyncService:
    return SubscriptionSyncService(db, gateway, cache, config)


def get_plan_sync_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> PlanSyncService:
    return PlanSyncService(db, gateway, config.retry_backoff_seconds)


def get_provider_account_service(
    db: AsyncSession = Depends(get_db),
    cache: EntitlementCache = Depends(get_entitlement_cache),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    encryption: EncryptionService = Depends(get_encryption_service),
) -> ProviderAccountService:
    return ProviderAccountService(db, gateway, encryption, cache, settings.PUBLIC_BASE_URL)


# ============================================================================
# Caller identity
# ============================================================================


async def get_acting_user(
    x_acting_user_id: Optional[int] = Header(None, alias="X-Acting-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the caller forwarded by the API gateway.

    Raises:
        AuthenticationError: If the header is missing or names no active user
    """
    if not x_acting_user_id:
        raise AuthenticationError(message="X-Acting-User-Id header required")

    user = await UserDAO(db).get_by_id(x_acting_user_id)
    if user is None or not user.is_active:
        raise AuthenticationError(message="Acting user not found", user_id=x_acting_user_id)
    return user


async def require_superadmin(
    current_user: User = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Require the caller to hold an active superadmin role.

    Raises:
        AuthorizationError: If the caller is not a superadmin
    """
    roles = await RoleAssignmentDAO(db).get_active_role_names(current_user.id)
    if RoleName.SUPERADMIN not in roles:
        raise AuthorizationError(
            message="Superadmin access required",
            user_id=current_user.id,
        )
    return current_user


def require_same_user(acting_user: User, user_id: int) -> None:
    """
    Refuse requests that name a user other than the caller.

    Raises:
        AuthorizationError: If user_id is not the acting user's id
    """
    if acting_user.id != user_id:
        raise AuthorizationError(
            message="Cannot act on behalf of another user",
            user_id=acting_user.id,
        )
