"""
Provider webhook schemas.
"""

from typing import Optional

from billing_sync.schemas.common import CamelModel


class WebhookResponse(CamelModel):
    received: bool = True
    outcome: Optional[str] = None
    message: Optional[str] = None
