"""
Penalty quotes for booking cancellations.

WHAT: Loads a booking and its listing's cancellation policies and runs the
penalty calculator on them.

WHY: The booking cancellation flow lives elsewhere and only needs a stable
number for the same booking and cancellation time.
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import BookingNotFoundError
from billing_sync.dao.content import BookingDAO, CancellationPolicyDAO
from billing_sync.models.base import utc_naive, utcnow
from billing_sync.models.content import Booking
from billing_sync.services.penalty_calculator import PenaltyQuote, quote_penalty


class CancellationService:
    def __init__(self, session: AsyncSession):
        self.bookings = BookingDAO(session)
        self.policies = CancellationPolicyDAO(session)

    async def quote_for_booking(
        self,
        booking_id: int,
        cancel_at: Optional[datetime] = None,
    ) -> Tuple[Booking, PenaltyQuote]:
        """
        Returns:
            The booking and its penalty quote

        Raises:
            BookingNotFoundError: If the booking does not exist
            InvalidPolicyError: If a stored policy is malformed
        """
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id=booking_id)

        policies = await self.policies.get_for_post(booking.post_id)
        quote = quote_penalty(
            policies,
            booking.total_amount,
            booking.start_date,
            utc_naive(cancel_at) or utcnow(),
        )
        return booking, quote
