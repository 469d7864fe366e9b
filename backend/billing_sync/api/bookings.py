"""
Booking cancellation penalty endpoint.

WHY: The booking flow cancels and notifies on its own; it asks here for the
penalty so the number comes from a single place.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.db.session import get_db
from billing_sync.schemas.booking import AppliedPolicy, PenaltyQuoteRequest, PenaltyQuoteResponse
from billing_sync.services.cancellation_service import CancellationService

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post(
    "/{booking_id}/penalty-quote",
    response_model=PenaltyQuoteResponse,
    summary="Quote the cancellation penalty of a booking",
)
async def penalty_quote(
    booking_id: int,
    request: Optional[PenaltyQuoteRequest] = None,
    db: AsyncSession = Depends(get_db),
) -> PenaltyQuoteResponse:
    """
    Raises:
        BookingNotFoundError: Unknown booking (404)
        InvalidPolicyError: Malformed stored policy (500)
    """
    booking, quote = await CancellationService(db).quote_for_booking(
        booking_id,
        cancel_at=request.cancel_at if request else None,
    )

    policy = None
    if quote.policy is not None:
        policy = AppliedPolicy(
            days_quantity=quote.policy.days_quantity,
            cancellation_type=quote.policy.cancellation_type,
            cancellation_amount=float(quote.policy.cancellation_amount),
        )
    return PenaltyQuoteResponse(
        booking_id=booking_id,
        penalty=float(quote.amount),
        currency=booking.currency,
        days_before_booking=quote.days_before_booking,
        applies=quote.applies,
        policy=policy,
    )
