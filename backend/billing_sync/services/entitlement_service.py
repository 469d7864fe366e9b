"""
Entitlement resolution and permission checks.

WHAT: Answers "does this user have an active subscription, which roles do they
hold, and how much of their plan's quota is left", and derives per-action
permission decisions from that answer.

WHY: This is the read path behind every page render and every create action.
It must be fast, so answers are cached per user. It must never hand out access
that does not exist, so every failure fails closed. And it must not hang on a
slow provider, so provider probes run under their own deadline.

HOW:
1. Cache hit -> return it
2. Under the user's lock: probe the newest provider-linked subscription when
   its last check is older than the status TTL (or the cache was invalidated),
   and apply any discrepancy through the state machine
3. Compute quotas from the entitled subscription's plan
4. Reconcile roles: publisher when entitled with usage left, client always,
   superadmins untouched
5. Cache the snapshot
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import EntitlementConfig
from billing_sync.core.exceptions import PaymentProviderError, UserNotFoundError, ValidationError
from billing_sync.dao.content import PostDAO, BookingDAO
from billing_sync.dao.plan import SubscriptionPlanDAO
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.dao.user import UserDAO, RoleAssignmentDAO
from billing_sync.models.base import utcnow
from billing_sync.models.subscription import UserSubscription
from billing_sync.models.user import RoleName
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.payment_gateway import PaymentGateway, call_with_retry
from billing_sync.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)

POSTS_DEACTIVATION_REASON = "subscription_expired"


class PermissionAction(str, enum.Enum):
    CREATE_POST = "create_post"
    CREATE_BOOKING = "create_booking"
    PUBLISH = "publish"


@dataclass(frozen=True)
class SubscriptionSummary:
    id: int
    plan_id: Optional[int]
    plan_name: str
    status: str
    end_date: Optional[datetime]


@dataclass(frozen=True)
class EntitlementSnapshot:
    """What a user is entitled to at ``computed_at``."""

    user_id: int
    has_active_subscription: bool
    roles: List[str]
    remaining_posts: int
    remaining_bookings: int
    subscription: Optional[SubscriptionSummary] = None
    has_provider_account: bool = False
    possibly_stale: bool = False
    computed_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    @classmethod
    def fail_closed(cls, user_id: int, error: str) -> "EntitlementSnapshot":
        return cls(
            user_id=user_id,
            has_active_subscription=False,
            roles=[RoleName.CLIENT.value],
            remaining_posts=0,
            remaining_bookings=0,
            error=error,
        )


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: Optional[str] = None


class EntitlementService:
    """
    Resolves entitlement snapshots for users.

    Args:
        session: Database session
        cache: Shared entitlement cache (one per process)
        gateway: Provider gateway used for status probes
        config: Cache TTL, probe TTL and deadline settings
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: EntitlementCache,
        gateway: PaymentGateway,
        config: EntitlementConfig,
    ):
        self.session = session
        self.cache = cache
        self.gateway = gateway
        self.config = config
        self.users = UserDAO(session)
        self.roles = RoleAssignmentDAO(session)
        self.subscriptions = UserSubscriptionDAO(session)
        self.plans = SubscriptionPlanDAO(session)
        self.posts = PostDAO(session)
        self.bookings = BookingDAO(session)
        self.accounts = ProviderAccountDAO(session)
        self.state = SubscriptionStateMachine(
            session,
            gateway=gateway,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )

    # ========================================================================
    # Public API
    # ========================================================================

    async def resolve(
        self,
        user_id: int,
        use_cache: bool = True,
        allow_probe: bool = True,
    ) -> EntitlementSnapshot:
        """
        Resolve a user's entitlement snapshot.

        Never raises: any internal failure is logged and answered with a
        fail-closed snapshot (no subscription, no quota) that is not cached.

        Args:
            user_id: User to resolve
            use_cache: Return a fresh cached snapshot when available
            allow_probe: Allow a provider status probe during resolution
        """
        if use_cache:
            entry = self.cache.get(user_id)
            if entry is not None:
                return entry.value

        async with self.cache.lock_for(user_id):
            if use_cache:
                # WHY: Another request may have computed it while we waited.
                entry = self.cache.get(user_id)
                if entry is not None:
                    return entry.value

            # An invalidation while computing makes this snapshot outdated
            generation = self.cache.generation(user_id)
            try:
                snapshot = await self._compute(user_id, allow_probe)
                await self.session.commit()
            except Exception:
                logger.exception(
                    "Entitlement resolution failed, failing closed",
                    extra={"user_id": user_id},
                )
                await self._rollback_after_failure(user_id)
                return EntitlementSnapshot.fail_closed(user_id, "Error checking entitlements")

            if snapshot.error is None and not snapshot.possibly_stale:
                self.cache.set(user_id, snapshot, generation=generation)
            return snapshot

    async def refresh_roles(self, user_id: int) -> EntitlementSnapshot:
        """Recompute entitlements after a known change, without probing."""
        self.cache.invalidate(user_id)
        self.cache.consume_invalidation(user_id)
        return await self.resolve(user_id, use_cache=False, allow_probe=False)

    def invalidate(self, user_id: int) -> None:
        self.cache.invalidate(user_id)

    async def change_role(
        self,
        user_id: int,
        role: RoleName,
        assign: bool,
        assigned_by: str,
    ) -> Tuple[List[str], bool]:
        """
        Assign or remove a role by hand (admin action).

        Note: publisher is derived from entitlement, so a manual publisher
        edit holds only until the next resolution recomputes it.

        Returns:
            (active role names, whether anything changed)

        Raises:
            UserNotFoundError: If the user does not exist
            ValidationError: If removing the client role
        """
        if await self.users.get_by_id(user_id) is None:
            raise UserNotFoundError(user_id=user_id)
        if not assign and role == RoleName.CLIENT:
            raise ValidationError(message="The client role cannot be removed", user_id=user_id)

        if assign:
            changed = await self.roles.ensure_role(user_id, role, assigned_by=assigned_by)
        else:
            changed = await self.roles.deactivate_role(user_id, role)

        await self.session.commit()
        self.cache.invalidate(user_id)
        logger.info(
            f"Role {role.value} {'assigned' if assign else 'removed'} by {assigned_by}",
            extra={"user_id": user_id, "changed": changed},
        )
        roles = await self.roles.get_active_role_names(user_id)
        return [r.value for r in roles], changed

    async def check_permission(self, user_id: int, action: str) -> PermissionDecision:
        """
        Decide whether a user may perform an action.

        Returns:
            PermissionDecision with a user-facing reason when denied
        """
        try:
            action = PermissionAction(action)
        except ValueError:
            return PermissionDecision(allowed=False, reason="Unknown action")

        snapshot = await self.resolve(user_id)
        if snapshot.error is not None:
            return PermissionDecision(allowed=False, reason="Error checking permissions")

        if action == PermissionAction.CREATE_POST:
            if not snapshot.has_active_subscription:
                return PermissionDecision(False, "Active subscription required to create posts")
            if snapshot.remaining_posts <= 0:
                return PermissionDecision(
                    False,
                    "Post limit reached. Upgrade your plan to create more posts",
                )
            if RoleName.PUBLISHER.value in snapshot.roles and not snapshot.has_provider_account:
                return PermissionDecision(
                    False,
                    "Payment account connection required. Connect your MercadoPago "
                    "account to receive payments for your posts",
                )
            return PermissionDecision(True)

        if action == PermissionAction.CREATE_BOOKING:
            if not snapshot.has_active_subscription:
                return PermissionDecision(False, "Active subscription required to manage bookings")
            if snapshot.remaining_bookings <= 0:
                return PermissionDecision(
                    False,
                    "Booking limit reached. Upgrade your plan to accept more bookings",
                )
            return PermissionDecision(True)

        if not snapshot.has_active_subscription:
            return PermissionDecision(False, "Active subscription required to publish content")
        return PermissionDecision(True)

    # ========================================================================
    # Resolution
    # ========================================================================

    async def _compute(self, user_id: int, allow_probe: bool) -> EntitlementSnapshot:
        user = await self.users.get_by_id(user_id)
        if user is None:
            logger.warning("Entitlement requested for unknown user", extra={"user_id": user_id})
            return EntitlementSnapshot.fail_closed(user_id, "User not found")

        force_probe = self.cache.consume_invalidation(user_id)
        possibly_stale = False

        latest = await self.subscriptions.get_latest_provider_linked(user_id)
        if allow_probe and latest is not None and self._needs_probe(latest, force_probe):
            probed = await self._probe(latest)
            if probed is None:
                last_known = self.cache.get_last_known(user_id)
                if last_known is not None:
                    return replace(last_known.value, possibly_stale=True)
                possibly_stale = True

        entitled = await self.subscriptions.get_entitled_for_user(user_id)
        plan = None
        if entitled is not None and entitled.plan_id is not None:
            plan = await self.plans.get_by_id(entitled.plan_id)

        remaining_posts = 0
        remaining_bookings = 0
        if plan is not None:
            used_posts = await self.posts.count_quota_posts(user_id)
            used_bookings = await self.bookings.count_open_for_publisher(user_id)
            remaining_posts = max(0, plan.max_posts - used_posts)
            remaining_bookings = max(0, plan.max_bookings - used_bookings)

        has_active = entitled is not None
        roles = await self._reconcile_roles(
            user_id,
            has_active=has_active,
            usage_remains=remaining_posts > 0 or remaining_bookings > 0,
        )
        account = await self.accounts.get_active_for_user(user_id)

        summary = None
        if entitled is not None:
            summary = SubscriptionSummary(
                id=entitled.id,
                plan_id=entitled.plan_id,
                plan_name=entitled.plan_name,
                status=entitled.status.value,
                end_date=entitled.end_date,
            )

        return EntitlementSnapshot(
            user_id=user_id,
            has_active_subscription=has_active,
            roles=roles,
            remaining_posts=remaining_posts,
            remaining_bookings=remaining_bookings,
            subscription=summary,
            has_provider_account=account is not None,
            possibly_stale=possibly_stale,
        )

    def _needs_probe(self, subscription: UserSubscription, force: bool) -> bool:
        if force or subscription.status_checked_at is None:
            return True
        age = utcnow() - subscription.status_checked_at
        return age > timedelta(seconds=self.config.status_ttl_seconds)

    async def _probe(self, subscription: UserSubscription) -> Optional[bool]:
        """
        Probe the provider for a subscription and apply any discrepancy.

        Returns:
            True if the probe completed, None if it missed the deadline or
            the provider failed (stored state is used as-is)
        """
        try:
            # WHY: Only the network call runs under the deadline; database
            # writes are never cancelled halfway.
            probe = await asyncio.wait_for(
                call_with_retry(
                    self.gateway.probe_subscription_status,
                    subscription.provider_subscription_id,
                    subscription.status,
                    backoff_seconds=self.config.retry_backoff_seconds,
                ),
                timeout=self.config.deadline_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Provider status probe exceeded {self.config.deadline_seconds}s deadline",
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )
            return None
        except PaymentProviderError as e:
            logger.warning(
                f"Provider status probe failed: {e.message}",
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )
            return None

        if probe.differs:
            logger.info(
                f"Provider reports {probe.provider_status} for subscription stored as "
                f"{subscription.status.value}",
                extra={"subscription_id": subscription.id},
            )
        await self.state.apply_provider_update(
            subscription,
            probe.provider_status,
            probe.last_modified,
            source="probe",
        )
        await self.state.mark_checked(subscription)
        return True

    async def _reconcile_roles(self, user_id: int, has_active: bool, usage_remains: bool) -> List[str]:
        """
        Bring stored roles in line with entitlement.

        WHY: Superadmin roles are managed by hand and never touched here.
        Losing the subscription (not merely exhausting quota) also takes the
        user's published posts offline.
        """
        current = await self.roles.get_active_role_names(user_id)
        if RoleName.SUPERADMIN in current:
            return [role.value for role in current]

        if has_active and usage_remains:
            if await self.roles.ensure_role(user_id, RoleName.PUBLISHER, assigned_by="resolver"):
                logger.info("Granted publisher role", extra={"user_id": user_id})
        elif await self.roles.deactivate_role(user_id, RoleName.PUBLISHER):
            logger.info("Revoked publisher role", extra={"user_id": user_id})
            if not has_active:
                deactivated = await self.posts.deactivate_published(
                    user_id, POSTS_DEACTIVATION_REASON
                )
                if deactivated:
                    logger.info(
                        f"Deactivated {deactivated} posts after subscription lapsed",
                        extra={"user_id": user_id},
                    )

        await self.roles.ensure_role(user_id, RoleName.CLIENT, assigned_by="resolver")
        return [role.value for role in await self.roles.get_active_role_names(user_id)]

    async def _rollback_after_failure(self, user_id: int) -> None:
        try:
            await self.session.rollback()
        except Exception:
            logger.exception("Rollback after entitlement failure failed", extra={"user_id": user_id})
