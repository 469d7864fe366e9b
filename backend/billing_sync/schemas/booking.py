"""
Penalty quote schemas.
"""

from datetime import datetime
from typing import Optional

from billing_sync.models.content import CancellationType
from billing_sync.schemas.common import CamelModel


class PenaltyQuoteRequest(CamelModel):
    cancel_at: Optional[datetime] = None


class AppliedPolicy(CamelModel):
    days_quantity: int
    cancellation_type: CancellationType
    cancellation_amount: float


class PenaltyQuoteResponse(CamelModel):
    booking_id: int
    penalty: float
    currency: str
    days_before_booking: int
    applies: bool
    policy: Optional[AppliedPolicy] = None
