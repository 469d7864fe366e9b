"""
Marketplace content owned by users: listings, bookings, notifications, favorites.

WHY: These tables belong to the surrounding marketplace. They are modelled here
only as far as entitlement quotas, penalty computation and account teardown
need them.
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Boolean,
    Enum,
    ForeignKey,
    Text,
)

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin


class PostStatus(str, enum.Enum):
    """Listing status. Draft and published listings count against quota."""

    DRAFT = "draft"
    PUBLISHED = "published"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


QUOTA_POST_STATUSES = (PostStatus.DRAFT, PostStatus.PUBLISHED)


class Post(Base, PrimaryKeyMixin, TimestampMixin):
    """A bookable listing published by a user."""

    __tablename__ = "posts"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    status = Column(Enum(PostStatus), nullable=False, default=PostStatus.DRAFT, index=True)
    deactivated_at = Column(DateTime, nullable=True)
    deactivation_reason = Column(String(100), nullable=True)


class CancellationType(str, enum.Enum):
    FIXED = "Fixed"
    PERCENTAGE = "Percentage"


class CancellationPolicy(Base, PrimaryKeyMixin):
    """
    One step of a listing's cancellation schedule.

    WHY: Several policies per listing form a step function over the number of
    days between cancellation and the booking's start date.
    """

    __tablename__ = "cancellation_policies"

    post_id = Column(
        Integer,
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    days_quantity = Column(Integer, nullable=False)
    cancellation_type = Column(Enum(CancellationType), nullable=False)
    cancellation_amount = Column(Numeric(12, 2), nullable=False)


class BookingStatus(str, enum.Enum):
    """Booking status. Pending and confirmed bookings count against quota."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


QUOTA_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(Base, PrimaryKeyMixin, TimestampMixin):
    """A booking made by a client on a publisher's listing."""

    __tablename__ = "bookings"

    post_id = Column(
        Integer,
        ForeignKey("posts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # WHY: user_id is the client who booked; publisher_id owns the listing.
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    publisher_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    start_date = Column(DateTime, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ARS")
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING, index=True)


class Notification(Base, PrimaryKeyMixin, TimestampMixin):
    __tablename__ = "notifications"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)


class Favorite(Base, PrimaryKeyMixin, TimestampMixin):
    __tablename__ = "favorites"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    post_id = Column(Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
