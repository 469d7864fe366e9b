"""
User and role assignment models.

WHY: The identity subsystem owns users, but the role set is what gates
publishing. Roles are stored as separate assignment rows so that the
entitlement resolver can deactivate a publisher role without losing the
record of when it was granted, and so a user can hold several roles.

INVARIANT: once initialized, a user holds at least one active role
(``client`` is assigned when nothing else exists).
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
)

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow


class RoleName(str, enum.Enum):
    """
    Roles a marketplace user can hold.

    - CLIENT: can browse, favorite and book
    - PUBLISHER: can create and publish listings (requires a subscription)
    - SUPERADMIN: platform operator, never touched by entitlement sync
    """

    CLIENT = "client"
    PUBLISHER = "publisher"
    SUPERADMIN = "superadmin"


class User(Base, PrimaryKeyMixin, TimestampMixin):
    """Marketplace user identity."""

    __tablename__ = "users"

    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)

    # WHY: Identity in the external auth provider; needed to delete the
    # account there after internal data is gone.
    external_identity_id = Column(String(255), nullable=True, unique=True)

    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class RoleAssignment(Base, PrimaryKeyMixin):
    """
    A role held by a user.

    WHY: Inactive rows are kept instead of deleted when the resolver revokes
    a role, so reactivation keeps the original assignment id.
    """

    __tablename__ = "role_assignments"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_name = Column(Enum(RoleName), nullable=False)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    is_active = Column(Boolean, nullable=False, default=True)
    assigned_by = Column(String(50), nullable=True, doc="system, resolver or admin user id")

    __table_args__ = (
        UniqueConstraint("user_id", "role_name", name="uq_role_assignment_user_role"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoleAssignment(user_id={self.user_id}, role={self.role_name.value}, "
            f"active={self.is_active})>"
        )
