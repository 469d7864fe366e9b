"""
Provider account schemas.
"""

from typing import Optional

from pydantic import Field

from billing_sync.schemas.common import CamelModel


class AuthorizeRequest(CamelModel):
    user_id: int = Field(gt=0)


class AuthorizeResponse(CamelModel):
    auth_url: str
    state: str


class AccountStatusResponse(CamelModel):
    has_account: bool
    is_active: bool
    is_token_valid: Optional[bool] = None
    token_refreshed: bool = False
    message: Optional[str] = None
    account_id: Optional[int] = None
    provider_user_id: Optional[str] = None
    expires_at: Optional[str] = None


class DisconnectResponse(CamelModel):
    success: bool = True
    deactivated: int
