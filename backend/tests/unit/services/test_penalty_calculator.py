"""
Unit tests for the cancellation penalty calculator.

WHAT: Bracket selection, fixed and percentage amounts, rounding and
malformed policy handling.

WHY: The calculator is pure, so it is tested without any store.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from billing_sync.core.exceptions import InvalidPolicyError
from billing_sync.models.content import CancellationType
from billing_sync.services.penalty_calculator import (
    PenaltyPolicy,
    calculate_penalty,
    days_before_booking,
    normalize_policy,
    quote_penalty,
    select_policy,
)

CANCEL_AT = datetime(2025, 3, 1, 12, 0, 0)

POLICIES = [
    {"daysQuantity": 3, "cancellationType": "Fixed", "cancellationAmount": 50},
    {"daysQuantity": 7, "cancellationType": "Percentage", "cancellationAmount": 20},
]


def _start(days: float) -> datetime:
    return CANCEL_AT + timedelta(days=days)


class TestBracketSelection:
    """Tests for which policy applies."""

    def test_five_days_out_uses_seven_day_policy(self):
        quote = quote_penalty(POLICIES, 1000, _start(5), CANCEL_AT)

        assert quote.policy.days_quantity == 7
        assert quote.amount == Decimal("200.00")
        assert quote.applies is True

    def test_one_day_out_uses_three_day_policy(self):
        quote = quote_penalty(POLICIES, 1000, _start(1), CANCEL_AT)

        assert quote.policy.days_quantity == 3
        assert quote.amount == Decimal("50.00")

    def test_ten_days_out_has_no_penalty(self):
        quote = quote_penalty(POLICIES, 1000, _start(10), CANCEL_AT)

        assert quote.policy is None
        assert quote.applies is False
        assert quote.amount == Decimal("0.00")

    def test_boundary_is_inclusive(self):
        assert calculate_penalty(POLICIES, 1000, _start(3), CANCEL_AT) == Decimal("50.00")
        assert calculate_penalty(POLICIES, 1000, _start(7), CANCEL_AT) == Decimal("200.00")

    def test_policy_order_does_not_matter(self):
        forward = quote_penalty(POLICIES, 1000, _start(5), CANCEL_AT)
        backward = quote_penalty(list(reversed(POLICIES)), 1000, _start(5), CANCEL_AT)
        assert forward == backward

    def test_no_policies(self):
        assert calculate_penalty([], 1000, _start(1), CANCEL_AT) == Decimal("0.00")

    def test_select_policy_directly(self):
        policies = [normalize_policy(p) for p in POLICIES]
        assert select_policy(policies, 0).days_quantity == 3
        assert select_policy(policies, 4).days_quantity == 7
        assert select_policy(policies, 8) is None


class TestDaysBeforeBooking:
    def test_partial_days_round_up(self):
        assert days_before_booking(_start(4.1), CANCEL_AT) == 5

    def test_after_start_is_negative(self):
        assert days_before_booking(_start(-2), CANCEL_AT) == -2

    def test_aware_datetimes_are_normalized(self):
        start = datetime(2025, 3, 6, 12, 0, tzinfo=timezone.utc)
        cancel = datetime(2025, 3, 1, 9, 0, tzinfo=timezone(timedelta(hours=-3)))
        assert days_before_booking(start, cancel) == 5

    def test_past_start_falls_in_tightest_bracket(self):
        quote = quote_penalty(POLICIES, 1000, _start(-1), CANCEL_AT)
        assert quote.policy.days_quantity == 3


class TestAmounts:
    def test_percentage_rounds_half_up(self):
        policies = [{"days_quantity": 5, "cancellation_type": "Percentage", "cancellation_amount": "12.5"}]
        # 0.125 * 100.10 = 12.5125 -> 12.51; 0.125 * 100.12 = 12.515 -> 12.52
        assert calculate_penalty(policies, Decimal("100.10"), _start(1), CANCEL_AT) == Decimal("12.51")
        assert calculate_penalty(policies, Decimal("100.12"), _start(1), CANCEL_AT) == Decimal("12.52")

    def test_float_inputs_do_not_leak_binary_error(self):
        policies = [{"days_quantity": 5, "cancellation_type": "Percentage", "cancellation_amount": 10}]
        assert calculate_penalty(policies, 0.1 + 0.2, _start(1), CANCEL_AT) == Decimal("0.03")

    def test_fixed_amount_ignores_total(self):
        policies = [PenaltyPolicy(5, CancellationType.FIXED, Decimal("75"))]
        assert calculate_penalty(policies, 10, _start(1), CANCEL_AT) == Decimal("75.00")

    def test_deterministic(self):
        first = quote_penalty(POLICIES, 1000, _start(5), CANCEL_AT)
        second = quote_penalty(POLICIES, 1000, _start(5), CANCEL_AT)
        assert first == second


class TestMalformedPolicies:
    """
    Malformed data raises immediately.

    WHY: A guessed penalty is worse than a visible error.
    """

    @pytest.mark.parametrize(
        "policy",
        [
            {"days_quantity": 3, "cancellation_type": "Fixed"},
            {"days_quantity": -1, "cancellation_type": "Fixed", "cancellation_amount": 5},
            {"days_quantity": "3", "cancellation_type": "Fixed", "cancellation_amount": 5},
            {"days_quantity": 3, "cancellation_type": "Refund", "cancellation_amount": 5},
            {"days_quantity": 3, "cancellation_type": "Fixed", "cancellation_amount": "abc"},
            {"days_quantity": 3, "cancellation_type": "Fixed", "cancellation_amount": -5},
            {"days_quantity": 3, "cancellation_type": "Percentage", "cancellation_amount": 150},
            {"days_quantity": 3, "cancellation_type": "Fixed", "cancellation_amount": "NaN"},
        ],
    )
    def test_invalid_policy(self, policy):
        with pytest.raises(InvalidPolicyError):
            quote_penalty([policy], 1000, _start(1), CANCEL_AT)

    def test_negative_total(self):
        with pytest.raises(InvalidPolicyError):
            quote_penalty(POLICIES, -1, _start(1), CANCEL_AT)
