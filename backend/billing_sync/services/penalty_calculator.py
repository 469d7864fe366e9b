"""
Cancellation penalty calculator.

WHAT: Computes the penalty owed when a booking is cancelled, from the listing's
cancellation policies.

WHY: The number must be identical for identical inputs, whoever asks for it
(the booking flow, the quote endpoint, support tooling), so the computation is
a pure function with no store access.

HOW:
1. days_before_booking = ceil((start_date - cancel_at) / 1 day)
2. The applicable policy is the tightest bracket still open: the smallest
   days_quantity that is >= days_before_booking. Cancelling 5 days out
   against 3-day and 7-day policies falls in the 7-day bracket; 1 day out
   falls in the 3-day bracket; 10 days out falls in none.
3. Fixed -> the policy amount. Percentage -> total * amount / 100.
   Both are rounded to 2 decimals with ROUND_HALF_UP.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, List, Optional, Union

from billing_sync.core.exceptions import InvalidPolicyError
from billing_sync.models.base import utcnow, utc_naive
from billing_sync.models.content import CancellationType

CENTS = Decimal("0.01")
SECONDS_PER_DAY = 86400

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class PenaltyPolicy:
    """One step of a cancellation schedule."""

    days_quantity: int
    cancellation_type: CancellationType
    cancellation_amount: Decimal


@dataclass(frozen=True)
class PenaltyQuote:
    amount: Decimal
    days_before_booking: int
    policy: Optional[PenaltyPolicy]

    @property
    def applies(self) -> bool:
        return self.policy is not None


def _to_decimal(value: Number, field: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidPolicyError(
            message=f"Cancellation policy {field} is not a number",
            field=field,
            value=str(value),
        )
    if not result.is_finite():
        raise InvalidPolicyError(message=f"Cancellation policy {field} is not finite", field=field)
    return result


def normalize_policy(policy: Any) -> PenaltyPolicy:
    """
    Build a PenaltyPolicy from a model row, a mapping or a PenaltyPolicy.

    Raises:
        InvalidPolicyError: If any field is missing or out of range
    """
    if isinstance(policy, PenaltyPolicy):
        return policy

    if isinstance(policy, dict):
        days = policy.get("days_quantity", policy.get("daysQuantity"))
        kind = policy.get("cancellation_type", policy.get("cancellationType"))
        amount = policy.get("cancellation_amount", policy.get("cancellationAmount"))
    else:
        days = getattr(policy, "days_quantity", None)
        kind = getattr(policy, "cancellation_type", None)
        amount = getattr(policy, "cancellation_amount", None)

    if days is None or kind is None or amount is None:
        raise InvalidPolicyError(message="Cancellation policy is incomplete")

    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise InvalidPolicyError(
            message="Cancellation policy days must be a non-negative integer",
            days_quantity=str(days),
        )

    try:
        kind = CancellationType(kind)
    except ValueError:
        raise InvalidPolicyError(
            message="Unknown cancellation type",
            cancellation_type=str(kind),
        )

    amount = _to_decimal(amount, "cancellation_amount")
    if amount < 0:
        raise InvalidPolicyError(message="Cancellation amount cannot be negative")
    if kind == CancellationType.PERCENTAGE and amount > 100:
        raise InvalidPolicyError(message="Cancellation percentage cannot exceed 100")

    return PenaltyPolicy(days_quantity=days, cancellation_type=kind, cancellation_amount=amount)


def days_before_booking(start_date: datetime, cancel_at: datetime) -> int:
    """Whole days between cancellation and start, rounded up."""
    delta = utc_naive(start_date) - utc_naive(cancel_at)
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def select_policy(policies: List[PenaltyPolicy], days_before: int) -> Optional[PenaltyPolicy]:
    """Pick the smallest threshold that days_before has not exceeded."""
    applicable = None
    for policy in sorted(policies, key=lambda p: p.days_quantity, reverse=True):
        if days_before <= policy.days_quantity:
            applicable = policy
    return applicable


def quote_penalty(
    policies: Iterable[Any],
    total_amount: Number,
    start_date: datetime,
    cancel_at: Optional[datetime] = None,
) -> PenaltyQuote:
    """
    Compute the cancellation penalty for a booking.

    Args:
        policies: Cancellation policies of the listing (any order)
        total_amount: Booking total
        start_date: Booking start
        cancel_at: Cancellation time (defaults to now)

    Returns:
        PenaltyQuote with the amount and the policy that produced it

    Raises:
        InvalidPolicyError: If a policy or the total is malformed
    """
    normalized = [normalize_policy(p) for p in policies]
    total = _to_decimal(total_amount, "total_amount")
    if total < 0:
        raise InvalidPolicyError(message="Booking total cannot be negative")

    days_before = days_before_booking(start_date, cancel_at or utcnow())
    policy = select_policy(normalized, days_before)

    if policy is None:
        amount = Decimal("0.00")
    elif policy.cancellation_type == CancellationType.FIXED:
        amount = policy.cancellation_amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    else:
        amount = (total * policy.cancellation_amount / Decimal(100)).quantize(
            CENTS, rounding=ROUND_HALF_UP
        )

    return PenaltyQuote(amount=amount, days_before_booking=days_before, policy=policy)


def calculate_penalty(
    policies: Iterable[Any],
    total_amount: Number,
    start_date: datetime,
    cancel_at: Optional[datetime] = None,
) -> Decimal:
    """Shortcut returning only the penalty amount."""
    return quote_penalty(policies, total_amount, start_date, cancel_at).amount
