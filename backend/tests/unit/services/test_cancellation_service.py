"""
Unit tests for CancellationService.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from billing_sync.core.exceptions import BookingNotFoundError
from billing_sync.models.base import utcnow
from billing_sync.models.content import CancellationType
from billing_sync.services.cancellation_service import CancellationService
from tests.factories import BookingFactory, CancellationPolicyFactory, PostFactory, UserFactory


@pytest.fixture
def service(db_session) -> CancellationService:
    return CancellationService(db_session)


async def _booking(db_session, days_out: int):
    publisher = await UserFactory.create_publisher(db_session)
    client = await UserFactory.create(db_session)
    post = await PostFactory.create(db_session, publisher)
    await CancellationPolicyFactory.create(db_session, post, 3, CancellationType.FIXED, Decimal("50"))
    await CancellationPolicyFactory.create(db_session, post, 7, CancellationType.PERCENTAGE, Decimal("20"))
    start = utcnow() + timedelta(days=days_out)
    booking = await BookingFactory.create(db_session, client, post, publisher, start_date=start)
    return booking, start


class TestQuoteForBooking:
    @pytest.mark.asyncio
    async def test_uses_stored_policies(self, db_session, service):
        booking, start = await _booking(db_session, days_out=5)

        found, quote = await service.quote_for_booking(booking.id, cancel_at=start - timedelta(days=5))

        assert found.id == booking.id
        assert quote.amount == Decimal("200.00")
        assert quote.policy.days_quantity == 7

    @pytest.mark.asyncio
    async def test_defaults_to_now(self, db_session, service):
        booking, _ = await _booking(db_session, days_out=30)

        _, quote = await service.quote_for_booking(booking.id)

        assert quote.applies is False
        assert quote.amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_same_inputs_same_quote(self, db_session, service):
        booking, start = await _booking(db_session, days_out=2)
        cancel_at = start - timedelta(days=2)

        _, first = await service.quote_for_booking(booking.id, cancel_at=cancel_at)
        _, second = await service.quote_for_booking(booking.id, cancel_at=cancel_at)

        assert first == second
        assert first.amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_booking_without_policies(self, db_session, service):
        client = await UserFactory.create(db_session)
        booking = await BookingFactory.create(db_session, client)

        _, quote = await service.quote_for_booking(booking.id)

        assert quote.amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_unknown_booking(self, service):
        with pytest.raises(BookingNotFoundError):
            await service.quote_for_booking(999)
