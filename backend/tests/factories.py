"""
Test factories for creating test data.

WHY: Factories provide a consistent, reusable way to create test objects,
reducing duplication and making tests more maintainable. Using factories
instead of manual object creation ensures tests stay consistent when models change.
"""

import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import utcnow
from billing_sync.models.user import User, RoleAssignment, RoleName
from billing_sync.models.plan import SubscriptionPlan, BillingCycle
from billing_sync.models.subscription import UserSubscription, SubscriptionStatus
from billing_sync.models.provider_account import ProviderAccount
from billing_sync.models.content import (
    Post,
    PostStatus,
    CancellationPolicy,
    CancellationType,
    Booking,
    BookingStatus,
    Notification,
    Favorite,
)
from billing_sync.services.encryption_service import EncryptionService

_sequence = itertools.count(1)


async def _save(session: AsyncSession, instance):
    session.add(instance)
    await session.commit()
    await session.refresh(instance)
    return instance


class UserFactory:
    """
    Factory for creating User test instances with role assignments.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        email: Optional[str] = None,
        name: str = "Test User",
        roles: Iterable[RoleName] = (RoleName.CLIENT,),
        external_identity_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        """
        Create a user for testing.

        Args:
            session: Database session
            email: User email (unique default when omitted)
            name: Display name
            roles: Active roles to assign
            external_identity_id: Identity provider id
            is_active: Whether the user can act

        Returns:
            Created User instance
        """
        n = next(_sequence)
        user = User(
            email=email or f"user{n}@example.com",
            name=name,
            external_identity_id=external_identity_id,
            is_active=is_active,
        )
        session.add(user)
        await session.flush()
        for role in roles:
            session.add(
                RoleAssignment(
                    user_id=user.id,
                    role_name=role,
                    assigned_at=utcnow(),
                    is_active=True,
                    assigned_by="test",
                )
            )
        await session.commit()
        await session.refresh(user)
        return user

    @staticmethod
    async def create_publisher(session: AsyncSession, **kwargs) -> User:
        return await UserFactory.create(
            session, roles=(RoleName.CLIENT, RoleName.PUBLISHER), **kwargs
        )

    @staticmethod
    async def create_superadmin(session: AsyncSession, **kwargs) -> User:
        return await UserFactory.create(
            session, name="Admin", roles=(RoleName.CLIENT, RoleName.SUPERADMIN), **kwargs
        )


class PlanFactory:
    """Factory for creating SubscriptionPlan test instances."""

    @staticmethod
    async def create(
        session: AsyncSession,
        name: str = "Pro",
        price: Decimal = Decimal("1000.00"),
        currency: str = "ARS",
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        max_posts: int = 5,
        max_bookings: int = 10,
        is_active: bool = True,
        provider_plan_id: Optional[str] = None,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            name=name,
            description=f"{name} plan",
            price=price,
            currency=currency,
            billing_cycle=billing_cycle,
            max_posts=max_posts,
            max_bookings=max_bookings,
            features=[],
            is_active=is_active,
            is_visible=True,
            provider_plan_id=provider_plan_id,
        )
        return await _save(session, plan)


class SubscriptionFactory:
    """
    Factory for creating UserSubscription test instances.

    WHY: status_checked_at defaults to now so entitlement resolution does
    not probe the provider unless a test asks for it (checked=False).
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        user: User,
        plan: Optional[SubscriptionPlan] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        provider_subscription_id: Optional[str] = None,
        provider_last_modified: Optional[datetime] = None,
        checked: bool = True,
        metadata: Optional[dict] = None,
    ) -> UserSubscription:
        now = utcnow()
        subscription = UserSubscription(
            user_id=user.id,
            plan_id=plan.id if plan else None,
            plan_name=plan.name if plan else "Legacy",
            amount=plan.price if plan else Decimal("0.00"),
            currency=plan.currency if plan else "ARS",
            billing_cycle=plan.billing_cycle if plan else BillingCycle.MONTHLY,
            status=status,
            provider_subscription_id=provider_subscription_id,
            provider_last_modified=provider_last_modified,
            status_checked_at=now if checked else None,
            start_date=now if status == SubscriptionStatus.ACTIVE else None,
            end_date=now + timedelta(days=30) if status == SubscriptionStatus.ACTIVE else None,
            extra_data=metadata or {},
        )
        return await _save(session, subscription)


class ProviderAccountFactory:
    """Factory for creating ProviderAccount test instances with encrypted tokens."""

    @staticmethod
    async def create(
        session: AsyncSession,
        user: User,
        encryption: EncryptionService,
        access_token: str = "APP_USR-access",
        refresh_token: Optional[str] = "TG-refresh",
        provider_user_id: str = "123456",
        is_active: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> ProviderAccount:
        account = ProviderAccount(
            user_id=user.id,
            provider_user_id=provider_user_id,
            access_token_encrypted=encryption.encrypt(access_token),
            refresh_token_encrypted=encryption.encrypt_optional(refresh_token),
            expires_at=expires_at,
            is_active=is_active,
            scope="offline_access read write",
            profile_snapshot={"id": provider_user_id},
        )
        return await _save(session, account)


class PostFactory:
    @staticmethod
    async def create(
        session: AsyncSession,
        user: User,
        title: str = "Glacier trek",
        status: PostStatus = PostStatus.PUBLISHED,
    ) -> Post:
        return await _save(session, Post(user_id=user.id, title=title, status=status))


class CancellationPolicyFactory:
    @staticmethod
    async def create(
        session: AsyncSession,
        post: Post,
        days_quantity: int,
        cancellation_type: CancellationType,
        cancellation_amount: Decimal,
    ) -> CancellationPolicy:
        policy = CancellationPolicy(
            post_id=post.id,
            days_quantity=days_quantity,
            cancellation_type=cancellation_type,
            cancellation_amount=cancellation_amount,
        )
        return await _save(session, policy)


class BookingFactory:
    @staticmethod
    async def create(
        session: AsyncSession,
        client: User,
        post: Optional[Post] = None,
        publisher: Optional[User] = None,
        start_date: Optional[datetime] = None,
        total_amount: Decimal = Decimal("1000.00"),
        currency: str = "ARS",
        status: BookingStatus = BookingStatus.CONFIRMED,
    ) -> Booking:
        booking = Booking(
            post_id=post.id if post else None,
            user_id=client.id,
            publisher_id=publisher.id if publisher else None,
            start_date=start_date or utcnow() + timedelta(days=14),
            total_amount=total_amount,
            currency=currency,
            status=status,
        )
        return await _save(session, booking)


class NotificationFactory:
    @staticmethod
    async def create(session: AsyncSession, user: User, message: str = "Booking confirmed") -> Notification:
        return await _save(session, Notification(user_id=user.id, message=message))


class FavoriteFactory:
    @staticmethod
    async def create(session: AsyncSession, user: User, post: Post) -> Favorite:
        return await _save(session, Favorite(user_id=user.id, post_id=post.id))
