"""
Account teardown orchestration.

WHAT: Removes everything a user owns, either when they unsubscribe (the user
stays, as a plain client) or when they delete their account (the user goes
too).

WHY: Teardown favours finishing over atomicity. Every step is independent,
commits on its own, and a failure in one is logged and reported without
stopping the others. Steps only delete what still exists, so running teardown
again after an interruption removes whatever was left and reports zero for
what was already gone.

HOW (same cascade for both entry points):
1. Cancel each subscription at the provider (best-effort), then delete it
2. Delete posts, bookings, provider account links, notifications, favorites
3. Identity last: unsubscribe adjusts roles (no publisher, client kept);
   delete removes roles and the user, then the external identity
4. Invalidate the entitlement cache
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import EntitlementConfig
from billing_sync.core.exceptions import (
    AuthorizationError,
    ExternalServiceError,
    PaymentProviderError,
    UserNotFoundError,
)
from billing_sync.dao.content import PostDAO, BookingDAO, NotificationDAO, FavoriteDAO
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.dao.user import UserDAO, RoleAssignmentDAO
from billing_sync.models.subscription import TERMINAL_STATUSES
from billing_sync.models.user import RoleName
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.identity_client import IdentityProviderClient
from billing_sync.services.payment_gateway import PaymentGateway, call_with_retry
from billing_sync.services.subscription_sync_service import parse_external_reference

logger = logging.getLogger(__name__)

CASCADE_KINDS = (
    "subscriptions",
    "posts",
    "bookings",
    "provider_accounts",
    "notifications",
    "favorites",
)


@dataclass
class TeardownManifest:
    """
    What a teardown run removed.

    ``failed_steps`` lists cascade kinds that raised; ``partial_failure`` is
    True when any step failed. Neither is an error for the caller.
    """

    user_id: int
    deleted_counts: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in CASCADE_KINDS})
    failed_steps: List[str] = field(default_factory=list)
    provider_cancel_failures: List[str] = field(default_factory=list)
    roles_updated: bool = False
    user_deleted: bool = False
    external_identity_deleted: bool = False

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_steps)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted_counts.values())


class TeardownService:
    """
    Cascading removal of a user's dependent data.

    Example:
        manifest = await TeardownService(session, gateway, cache, config, identity).unsubscribe(7)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        cache: EntitlementCache,
        config: EntitlementConfig,
        identity_client: Optional[IdentityProviderClient] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.cache = cache
        self.config = config
        self.identity_client = identity_client
        self.users = UserDAO(session)
        self.roles = RoleAssignmentDAO(session)
        self.subscriptions = UserSubscriptionDAO(session)
        self.posts = PostDAO(session)
        self.bookings = BookingDAO(session)
        self.accounts = ProviderAccountDAO(session)
        self.notifications = NotificationDAO(session)
        self.favorites = FavoriteDAO(session)

    # ========================================================================
    # Entry points
    # ========================================================================

    async def unsubscribe(
        self,
        user_id: int,
        subscription_id: Optional[int] = None,
        provider_subscription_id: Optional[str] = None,
    ) -> TeardownManifest:
        """
        Remove a user's subscriptions and content, keeping them as a client.

        Args:
            user_id: User to tear down
            subscription_id: Subscription the user asked to cancel; must be theirs
            provider_subscription_id: Provider preapproval to cancel even if no
                stored record references it anymore

        Raises:
            UserNotFoundError: If the user does not exist
            AuthorizationError: If subscription_id or provider_subscription_id
                belongs to another user
            PaymentProviderError: If an unstored provider_subscription_id
                cannot be looked up at the provider
        """
        await self._require_user(user_id)
        if subscription_id is not None:
            subscription = await self.subscriptions.get_by_id(subscription_id)
            if subscription is not None and subscription.user_id != user_id:
                raise AuthorizationError(message="Subscription does not belong to this user")
        if provider_subscription_id:
            await self._require_provider_owner(user_id, provider_subscription_id)

        manifest = TeardownManifest(user_id=user_id)
        await self._cascade(manifest, extra_provider_id=provider_subscription_id)
        await self._step(manifest, "roles", lambda: self._revert_to_client(manifest))
        self.cache.invalidate(user_id)

        logger.info(
            f"Unsubscribe finished: {manifest.deleted_counts}",
            extra={"user_id": user_id, "partial_failure": manifest.partial_failure},
        )
        return manifest

    async def delete_account(self, user_id: int) -> TeardownManifest:
        """
        Remove a user and everything they own.

        WHY: The identity row goes only after all dependent data has been
        processed. The external identity provider is called last and its
        failure does not undo the internal deletion.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = await self._require_user(user_id)
        external_identity_id = user.external_identity_id

        manifest = TeardownManifest(user_id=user_id)
        await self._cascade(manifest)
        await self._step(manifest, "user", lambda: self._delete_identity(manifest))
        self.cache.invalidate(user_id)

        if manifest.user_deleted and self.identity_client is not None and external_identity_id:
            try:
                manifest.external_identity_deleted = await self.identity_client.delete_user(
                    external_identity_id
                )
            except ExternalServiceError as e:
                logger.error(
                    f"External identity deletion failed; internal deletion kept: {e.message}",
                    extra={"user_id": user_id},
                )

        logger.info(
            f"Account deletion finished: {manifest.deleted_counts}",
            extra={"user_id": user_id, "partial_failure": manifest.partial_failure},
        )
        return manifest

    # ========================================================================
    # Cascade
    # ========================================================================

    async def _cascade(self, manifest: TeardownManifest, extra_provider_id: Optional[str] = None) -> None:
        user_id = manifest.user_id
        await self._step(
            manifest,
            "subscriptions",
            lambda: self._remove_subscriptions(manifest, extra_provider_id),
        )
        await self._count_step(manifest, "posts", lambda: self.posts.delete_by_user(user_id))
        await self._count_step(manifest, "bookings", lambda: self.bookings.delete_by_user(user_id))
        await self._count_step(
            manifest, "provider_accounts", lambda: self.accounts.delete_by_user(user_id)
        )
        await self._count_step(
            manifest, "notifications", lambda: self.notifications.delete_by_user(user_id)
        )
        await self._count_step(manifest, "favorites", lambda: self.favorites.delete_by_user(user_id))

    async def _step(
        self,
        manifest: TeardownManifest,
        name: str,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        """Run one cascade step in its own transaction; failures are recorded, not raised."""
        try:
            await action()
            await self.session.commit()
        except Exception:
            logger.exception(
                f"Teardown step '{name}' failed, continuing",
                extra={"user_id": manifest.user_id},
            )
            await self.session.rollback()
            manifest.failed_steps.append(name)

    async def _count_step(
        self,
        manifest: TeardownManifest,
        kind: str,
        action: Callable[[], Awaitable[int]],
    ) -> None:
        async def run() -> None:
            manifest.deleted_counts[kind] += await action()

        await self._step(manifest, kind, run)

    async def _remove_subscriptions(
        self,
        manifest: TeardownManifest,
        extra_provider_id: Optional[str],
    ) -> None:
        """
        Cancel at the provider, then delete, one subscription at a time.

        WHY: Each deletion is committed on its own so an interruption keeps
        the ones already removed, and the count reflects committed deletes.
        """
        seen_provider_ids = set()
        for subscription in await self.subscriptions.get_by_user(manifest.user_id):
            subscription_id = subscription.id
            provider_id = subscription.provider_subscription_id
            if provider_id:
                seen_provider_ids.add(provider_id)
                if subscription.status not in TERMINAL_STATUSES:
                    await self._cancel_at_provider(manifest, provider_id)

            if await self.subscriptions.delete(subscription_id):
                await self.session.commit()
                manifest.deleted_counts["subscriptions"] += 1

        if extra_provider_id and extra_provider_id not in seen_provider_ids:
            await self._cancel_at_provider(manifest, extra_provider_id)

    async def _require_provider_owner(self, user_id: int, provider_id: str) -> None:
        """
        Refuse to cancel a preapproval the user does not own.

        Stored records answer directly; an id with no stored record must
        carry this user's external reference at the provider.
        """
        stored = await self.subscriptions.get_by_provider_id(provider_id)
        if stored is not None:
            owner_id = stored.user_id
        else:
            remote = await call_with_retry(
                self.gateway.get_subscription,
                provider_id,
                backoff_seconds=self.config.retry_backoff_seconds,
            )
            parsed = parse_external_reference(remote.external_reference)
            owner_id = parsed[1] if parsed else None

        if owner_id != user_id:
            logger.warning(
                "Refused to cancel a preapproval owned by another user",
                extra={"user_id": user_id, "provider_subscription_id": provider_id},
            )
            raise AuthorizationError(message="Subscription does not belong to this user")

    async def _cancel_at_provider(self, manifest: TeardownManifest, provider_id: str) -> None:
        try:
            await call_with_retry(
                self.gateway.cancel_subscription,
                provider_id,
                backoff_seconds=self.config.retry_backoff_seconds,
            )
        except PaymentProviderError as e:
            logger.error(
                f"Provider cancellation failed during teardown: {e.message}",
                extra={"user_id": manifest.user_id, "provider_subscription_id": provider_id},
            )
            manifest.provider_cancel_failures.append(provider_id)

    # ========================================================================
    # Identity
    # ========================================================================

    async def _revert_to_client(self, manifest: TeardownManifest) -> None:
        current = await self.roles.get_active_role_names(manifest.user_id)
        changed = False
        if RoleName.SUPERADMIN not in current:
            changed = await self.roles.deactivate_role(manifest.user_id, RoleName.PUBLISHER)
        changed = await self.roles.ensure_role(
            manifest.user_id, RoleName.CLIENT, assigned_by="teardown"
        ) or changed
        manifest.roles_updated = changed

    async def _delete_identity(self, manifest: TeardownManifest) -> None:
        await self.roles.delete_by_user(manifest.user_id)
        manifest.user_deleted = await self.users.delete(manifest.user_id)

    async def _require_user(self, user_id: int):
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id=user_id)
        return user
