"""
Provider account link data access.

WHY: Tokens are encrypted before they reach this layer. The DAO only enforces
the "one active link per user" rule.
"""

from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.provider_account import ProviderAccount


class ProviderAccountDAO(BaseDAO[ProviderAccount]):
    """Data access for provider account links."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProviderAccount, session)

    async def get_active_for_user(self, user_id: int) -> Optional[ProviderAccount]:
        result = await self.session.execute(
            select(ProviderAccount)
            .where(
                ProviderAccount.user_id == user_id,
                ProviderAccount.is_active.is_(True),
            )
            .order_by(ProviderAccount.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def deactivate_all_for_user(self, user_id: int) -> int:
        """
        Deactivate every active link of a user.

        Returns:
            Number of links deactivated
        """
        result = await self.session.execute(
            update(ProviderAccount)
            .where(
                ProviderAccount.user_id == user_id,
                ProviderAccount.is_active.is_(True),
            )
            .values(is_active=False)
        )
        return result.rowcount or 0

    async def link_account(self, user_id: int, **fields) -> ProviderAccount:
        """
        Create a new active link, deactivating older ones first.

        WHY: At most one active link per user.
        """
        await self.deactivate_all_for_user(user_id)
        return await self.create(user_id=user_id, is_active=True, **fields)
