"""
Provider account endpoints.

WHAT: MercadoPago marketplace connection for publishers.

Endpoints:
1. POST /provider-accounts/oauth/authorize - Consent URL for a user
2. GET /provider-accounts/oauth/callback - Provider redirect target
3. GET /provider-accounts/{user_id}/status - Connection state (refreshes tokens)
4. POST /provider-accounts/{user_id}/disconnect - Deactivate links

SECURITY (OWASP A07):
- The state parameter is parsed back to the user; malformed states are refused
- Tokens are encrypted before storage and never returned
- Every route except the callback acts only for the calling user
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from billing_sync.core.config import settings
from billing_sync.core.deps import get_acting_user, get_provider_account_service, require_same_user
from billing_sync.models.user import User
from billing_sync.schemas.provider_account import (
    AccountStatusResponse,
    AuthorizeRequest,
    AuthorizeResponse,
    DisconnectResponse,
)
from billing_sync.services.provider_account_service import ProviderAccountService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provider-accounts", tags=["Provider Accounts"])


@router.post(
    "/oauth/authorize",
    response_model=AuthorizeResponse,
    summary="Start provider OAuth",
)
async def authorize(
    request: AuthorizeRequest,
    acting_user: User = Depends(get_acting_user),
    service: ProviderAccountService = Depends(get_provider_account_service),
) -> AuthorizeResponse:
    """
    Raises:
        OAuthConfigurationError: Marketplace credentials missing (503)
    """
    require_same_user(acting_user, request.user_id)
    result = await service.authorize(request.user_id)
    return AuthorizeResponse(**result)


@router.get(
    "/oauth/callback",
    summary="Provider OAuth callback",
    description="Handles the redirect from the provider after consent.",
)
async def oauth_callback(
    code: Optional[str] = Query(default=None, description="Authorization code"),
    state: Optional[str] = Query(default=None, description="State parameter"),
    error: Optional[str] = Query(default=None, description="Error code if consent denied"),
    service: ProviderAccountService = Depends(get_provider_account_service),
):
    """
    Complete the OAuth flow and send the browser back to the dashboard.

    Returns:
        Redirect carrying oauth_success/account_id or oauth_error
    """
    try:
        url = await service.handle_callback(code, state, error)
    except Exception:
        logger.exception("Unexpected error in provider OAuth callback")
        url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}/dashboard?oauth_error=server_error"
    return RedirectResponse(url=url, status_code=302)


@router.get(
    "/{user_id}/status",
    response_model=AccountStatusResponse,
    summary="Provider account status",
    description="Validates the stored token and refreshes it when possible.",
)
async def account_status(
    user_id: int,
    acting_user: User = Depends(get_acting_user),
    service: ProviderAccountService = Depends(get_provider_account_service),
) -> AccountStatusResponse:
    require_same_user(acting_user, user_id)
    status = await service.account_status(user_id)
    return AccountStatusResponse.model_validate(status)


@router.post(
    "/{user_id}/disconnect",
    response_model=DisconnectResponse,
    summary="Disconnect provider account",
)
async def disconnect(
    user_id: int,
    acting_user: User = Depends(get_acting_user),
    service: ProviderAccountService = Depends(get_provider_account_service),
) -> DisconnectResponse:
    require_same_user(acting_user, user_id)
    count = await service.disconnect(user_id)
    return DisconnectResponse(deactivated=count)
