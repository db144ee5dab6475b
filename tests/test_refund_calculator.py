"""Tests for cancellation refund calculation."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app.services.refund_calculator import RefundCalculator
from core.config import RefundPolicy, RefundTier
from core.exceptions.base import ValidationException

START = date(2026, 4, 1)


def at(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 10, 0, tzinfo=timezone.utc)


def tiered_policy(**kwargs) -> RefundPolicy:
    return RefundPolicy(
        pre_start_tiers=[
            RefundTier(min_days_before_start=14, refund_percent=Decimal("100")),
            RefundTier(min_days_before_start=7, refund_percent=Decimal("50")),
        ],
        **kwargs,
    )


class TestBeforeStart:
    """Tests for cancellations before the class starts."""

    async def test_default_policy_refunds_everything(self):
        breakdown = RefundCalculator(RefundPolicy()).calculate(
            None, 12000, 0, 10, START, at(date(2026, 3, 30))
        )
        assert breakdown.refund_amount == 12000
        assert breakdown.cancellation_fee == 0
        assert breakdown.net_refund == 12000
        assert "2 day(s) before start" in breakdown.policy_description

    async def test_matching_tier_sets_percentage(self):
        calculator = RefundCalculator(tiered_policy())
        early = calculator.calculate(None, 10000, 0, 10, START, at(date(2026, 3, 1)))
        assert early.net_refund == 10000
        middle = calculator.calculate(None, 10000, 0, 10, START, at(date(2026, 3, 22)))
        assert middle.refund_amount == 5000

    async def test_no_matching_tier_refunds_nothing(self):
        breakdown = RefundCalculator(tiered_policy(pre_start_fee=500)).calculate(
            None, 10000, 0, 10, START, at(date(2026, 3, 29))
        )
        assert breakdown.refund_amount == 0
        assert breakdown.cancellation_fee == 0
        assert breakdown.net_refund == 0

    async def test_pre_start_fee(self):
        breakdown = RefundCalculator(RefundPolicy(pre_start_fee=1500)).calculate(
            None, 10000, 0, 10, START, at(date(2026, 3, 1))
        )
        assert breakdown.refund_amount == 10000
        assert breakdown.cancellation_fee == 1500
        assert breakdown.net_refund == 8500
        assert "cancellation fee" in breakdown.policy_description


class TestAfterStart:
    """Tests for prorated cancellations once the class has started."""

    async def test_prorates_unattended_sessions(self):
        breakdown = RefundCalculator(RefundPolicy()).calculate(
            None, 10000, 4, 10, START, at(date(2026, 4, 20))
        )
        assert breakdown.refund_amount == 6000
        assert breakdown.net_refund == 6000
        assert "6 of 10 session(s) unattended" in breakdown.policy_description

    async def test_all_sessions_attended_refunds_nothing(self):
        """10 of 10 sessions attended leaves nothing to prorate."""
        breakdown = RefundCalculator(RefundPolicy(late_cancellation_fee=1000)).calculate(
            None, 10000, 10, 10, START, at(date(2026, 6, 12))
        )
        assert breakdown.refund_amount == 0
        assert breakdown.cancellation_fee == 0
        assert breakdown.net_refund == 0

    async def test_late_cancellation_fee(self):
        breakdown = RefundCalculator(RefundPolicy(late_cancellation_fee=1000)).calculate(
            None, 10000, 4, 10, START, at(date(2026, 4, 20))
        )
        assert breakdown.cancellation_fee == 1000
        assert breakdown.net_refund == 5000

    async def test_proration_rounds_half_up(self):
        breakdown = RefundCalculator(RefundPolicy()).calculate(
            None, 1001, 1, 2, START, at(START)
        )
        # 500.5 cents rounds up
        assert breakdown.refund_amount == 501

    async def test_attendance_beyond_total_refunds_nothing(self):
        breakdown = RefundCalculator(RefundPolicy()).calculate(
            None, 10000, 12, 10, START, at(date(2026, 6, 12))
        )
        assert breakdown.net_refund == 0


class TestRefundBounds:
    """Net refund always stays within 0..payment amount."""

    async def test_net_refund_within_payment(self):
        calculator = RefundCalculator(
            tiered_policy(pre_start_fee=700, late_cancellation_fee=2500)
        )
        for payment in (0, 1, 333, 999, 10000):
            for attended in (0, 3, 10, 15):
                for day in (date(2026, 2, 1), date(2026, 3, 28), START, date(2026, 5, 1)):
                    breakdown = calculator.calculate(None, payment, attended, 10, START, at(day))
                    assert 0 <= breakdown.net_refund <= payment
                    assert breakdown.cancellation_fee <= breakdown.refund_amount

    async def test_fee_larger_than_refund_is_capped(self):
        breakdown = RefundCalculator(RefundPolicy(pre_start_fee=5000)).calculate(
            None, 300, 0, 10, START, at(date(2026, 3, 1))
        )
        assert breakdown.cancellation_fee == 300
        assert breakdown.net_refund == 0


class TestRefundValidation:
    """Invalid input raises instead of returning a breakdown."""

    async def test_negative_payment(self):
        with pytest.raises(ValidationException):
            RefundCalculator(RefundPolicy()).calculate(None, -1, 0, 10, START, at(START))

    async def test_negative_attendance(self):
        with pytest.raises(ValidationException):
            RefundCalculator(RefundPolicy()).calculate(None, 100, -1, 10, START, at(START))

    async def test_class_without_sessions(self):
        with pytest.raises(ValidationException):
            RefundCalculator(RefundPolicy()).calculate(None, 100, 0, 0, START, at(START))
