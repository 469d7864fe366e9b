"""
Admin schemas.
"""

from enum import Enum
from typing import List

from billing_sync.models.user import RoleName
from billing_sync.schemas.common import CamelModel


class RoleOperation(str, Enum):
    ASSIGN = "assign"
    REMOVE = "remove"


class RoleChangeRequest(CamelModel):
    role: RoleName
    operation: RoleOperation = RoleOperation.ASSIGN


class RoleChangeResponse(CamelModel):
    user_id: int
    roles: List[str]
    changed: bool
