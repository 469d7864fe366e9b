"""
Data access for marketplace content referenced by entitlements and teardown.
"""

from typing import List

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.base import utcnow
from billing_sync.models.content import (
    Post,
    PostStatus,
    QUOTA_POST_STATUSES,
    CancellationPolicy,
    Booking,
    QUOTA_BOOKING_STATUSES,
    Notification,
    Favorite,
)


class PostDAO(BaseDAO[Post]):
    """Data access for listings."""

    def __init__(self, session: AsyncSession):
        super().__init__(Post, session)

    async def count_quota_posts(self, user_id: int) -> int:
        """Count listings that occupy a quota slot (draft or published)."""
        result = await self.session.execute(
            select(func.count())
            .select_from(Post)
            .where(Post.user_id == user_id, Post.status.in_(QUOTA_POST_STATUSES))
        )
        return int(result.scalar_one())

    async def deactivate_published(self, user_id: int, reason: str) -> int:
        """
        Take a user's published listings offline.

        Returns:
            Number of listings deactivated
        """
        result = await self.session.execute(
            update(Post)
            .where(Post.user_id == user_id, Post.status == PostStatus.PUBLISHED)
            .values(
                status=PostStatus.INACTIVE,
                deactivated_at=utcnow(),
                deactivation_reason=reason,
            )
        )
        return result.rowcount or 0


class CancellationPolicyDAO(BaseDAO[CancellationPolicy]):
    def __init__(self, session: AsyncSession):
        super().__init__(CancellationPolicy, session)

    async def get_for_post(self, post_id: int) -> List[CancellationPolicy]:
        result = await self.session.execute(
            select(CancellationPolicy)
            .where(CancellationPolicy.post_id == post_id)
            .order_by(CancellationPolicy.days_quantity)
        )
        return list(result.scalars().all())


class BookingDAO(BaseDAO[Booking]):
    """Data access for bookings."""

    def __init__(self, session: AsyncSession):
        super().__init__(Booking, session)

    async def count_open_for_publisher(self, publisher_id: int) -> int:
        """Count pending or confirmed bookings on a publisher's listings."""
        result = await self.session.execute(
            select(func.count())
            .select_from(Booking)
            .where(
                Booking.publisher_id == publisher_id,
                Booking.status.in_(QUOTA_BOOKING_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def get_involving_user(self, user_id: int) -> List[Booking]:
        """Bookings the user made or received."""
        result = await self.session.execute(
            select(Booking).where(
                or_(Booking.user_id == user_id, Booking.publisher_id == user_id)
            )
        )
        return list(result.scalars().all())


class NotificationDAO(BaseDAO[Notification]):
    def __init__(self, session: AsyncSession):
        super().__init__(Notification, session)


class FavoriteDAO(BaseDAO[Favorite]):
    def __init__(self, session: AsyncSession):
        super().__init__(Favorite, session)
