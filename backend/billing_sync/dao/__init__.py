"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from billing_sync.dao.base import BaseDAO
from billing_sync.dao.user import UserDAO, RoleAssignmentDAO
from billing_sync.dao.plan import SubscriptionPlanDAO
from billing_sync.dao.subscription import UserSubscriptionDAO
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.dao.content import (
    PostDAO,
    CancellationPolicyDAO,
    BookingDAO,
    NotificationDAO,
    FavoriteDAO,
)
from billing_sync.dao.operation import OperationProgressDAO

__all__ = [
    "BaseDAO",
    "UserDAO",
    "RoleAssignmentDAO",
    "SubscriptionPlanDAO",
    "UserSubscriptionDAO",
    "ProviderAccountDAO",
    "PostDAO",
    "CancellationPolicyDAO",
    "BookingDAO",
    "NotificationDAO",
    "FavoriteDAO",
    "OperationProgressDAO",
]
