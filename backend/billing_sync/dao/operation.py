"""
Operation progress data access.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.operation import OperationProgress


class OperationProgressDAO(BaseDAO[OperationProgress]):
    def __init__(self, session: AsyncSession):
        super().__init__(OperationProgress, session)

    async def get_by_operation_id(self, operation_id: str) -> Optional[OperationProgress]:
        return await self.get_by_field("operation_id", operation_id)
