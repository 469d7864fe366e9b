"""
User and role assignment data access.
"""

from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.base import utcnow
from billing_sync.models.user import User, RoleAssignment, RoleName


class UserDAO(BaseDAO[User]):
    """Data access for users."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    async def get_by_email(self, email: str) -> Optional[User]:
        return await self.get_by_field("email", email.lower())


class RoleAssignmentDAO(BaseDAO[RoleAssignment]):
    """
    Data access for role assignments.

    WHY: Roles are rows, not a column, so a role can be deactivated and
    later reactivated while keeping its assignment history.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(RoleAssignment, session)

    async def get_active_role_names(self, user_id: int) -> List[RoleName]:
        result = await self.session.execute(
            select(RoleAssignment.role_name)
            .where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.is_active.is_(True),
            )
            .order_by(RoleAssignment.id)
        )
        return list(result.scalars().all())

    async def get_assignment(self, user_id: int, role: RoleName) -> Optional[RoleAssignment]:
        result = await self.session.execute(
            select(RoleAssignment).where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role_name == role,
            )
        )
        return result.scalar_one_or_none()

    async def ensure_role(
        self,
        user_id: int,
        role: RoleName,
        assigned_by: str = "system",
    ) -> bool:
        """
        Make sure a user holds an active role.

        Returns:
            True if a row was created or reactivated, False if already active
        """
        assignment = await self.get_assignment(user_id, role)
        if assignment is None:
            await self.create(
                user_id=user_id,
                role_name=role,
                assigned_at=utcnow(),
                is_active=True,
                assigned_by=assigned_by,
            )
            return True

        if assignment.is_active:
            return False

        await self.update(
            assignment.id,
            is_active=True,
            assigned_at=utcnow(),
            assigned_by=assigned_by,
        )
        return True

    async def deactivate_role(self, user_id: int, role: RoleName) -> bool:
        """
        Deactivate a role if the user holds it.

        Returns:
            True if an active assignment was deactivated
        """
        result = await self.session.execute(
            update(RoleAssignment)
            .where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role_name == role,
                RoleAssignment.is_active.is_(True),
            )
            .values(is_active=False)
        )
        return (result.rowcount or 0) > 0
