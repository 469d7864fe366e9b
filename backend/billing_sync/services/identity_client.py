"""
External identity provider client.

WHAT: Deletes a user from the external authentication provider once the
internal account is gone.

WHY: Login identities live outside this service. Leaving one behind would let
a deleted user sign in to an empty account, but failing to reach the provider
must not undo the internal deletion, so callers log the error and move on.
"""

import logging
from typing import Optional

import httpx

from billing_sync.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class IdentityProviderClient:
    """Admin API client for the identity provider."""

    def __init__(self, admin_url: Optional[str], admin_token: Optional[str], timeout: float = 5.0):
        self._admin_url = admin_url.rstrip("/") if admin_url else None
        self._admin_token = admin_token
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._admin_url and self._admin_token)

    async def delete_user(self, external_identity_id: str) -> bool:
        """
        Delete an identity.

        Returns:
            True if deleted (or already absent), False when not configured

        Raises:
            ExternalServiceError: If the provider cannot be reached or refuses
        """
        if not self.enabled:
            logger.info("Identity provider not configured, skipping identity deletion")
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=False) as client:
                response = await client.delete(
                    f"{self._admin_url}/users/{external_identity_id}",
                    headers={"Authorization": f"Bearer {self._admin_token}"},
                )
        except httpx.RequestError as e:
            raise ExternalServiceError(
                message=f"Identity provider connection error: {type(e).__name__}",
            )

        if response.status_code == 404:
            return True
        if response.status_code >= 400:
            raise ExternalServiceError(
                message="Identity provider refused user deletion",
                provider_status=response.status_code,
            )
        return True
