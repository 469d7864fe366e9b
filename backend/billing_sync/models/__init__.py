"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin
from billing_sync.models.user import User, RoleAssignment, RoleName
from billing_sync.models.plan import SubscriptionPlan, BillingCycle
from billing_sync.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    ENTITLED_STATUSES,
)
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
from billing_sync.models.operation import OperationProgress, OperationStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "User",
    "RoleAssignment",
    "RoleName",
    "SubscriptionPlan",
    "BillingCycle",
    "UserSubscription",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "ENTITLED_STATUSES",
    "ProviderAccount",
    "Post",
    "PostStatus",
    "CancellationPolicy",
    "CancellationType",
    "Booking",
    "BookingStatus",
    "Notification",
    "Favorite",
    "OperationProgress",
    "OperationStatus",
]
