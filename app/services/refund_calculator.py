"""Cancellation refund calculation (pure, side-effect free)."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from app.models.enrollment import Enrollment
from app.utils.money import format_cents, percent_of, round_cents
from core.config import RefundPolicy, RefundTier, config
from core.exceptions.base import ValidationException


@dataclass(frozen=True)
class RefundBreakdown:
    refund_amount: int
    cancellation_fee: int
    net_refund: int
    policy_description: str
    enrollment_id: Optional[str] = None


class RefundCalculator:
    """Applies the refund policy to a cancellation.

    Before the class starts the matching pre-start tier sets the refund
    percentage and the pre-start fee applies. Once started, the payment is
    prorated by unattended sessions and the late-cancellation fee applies.
    Fees never exceed the refund, so the net is always within
    ``0..payment_amount``.
    """

    def __init__(self, policy: RefundPolicy = None):
        self.policy = policy or config.refund_policy()

    def calculate(
        self,
        enrollment: Optional[Enrollment],
        payment_amount: int,
        classes_attended: int,
        classes_total: int,
        class_start_date: date,
        now: datetime,
    ) -> RefundBreakdown:
        if payment_amount < 0:
            raise ValidationException("Payment amount cannot be negative")
        if classes_attended < 0:
            raise ValidationException("Classes attended cannot be negative")
        if classes_total <= 0:
            raise ValidationException("Class must have at least one session")

        enrollment_id = enrollment.id if enrollment is not None else None
        today = now.date()

        if today < class_start_date:
            days_before = (class_start_date - today).days
            tier = self._tier_for(days_before)
            percent = tier.refund_percent if tier else Decimal("0")
            refund_amount = min(percent_of(payment_amount, percent), payment_amount)
            fee = min(self.policy.pre_start_fee, refund_amount)
            description = (
                f"Cancelled {days_before} day(s) before start: "
                f"{percent.normalize():f}% refund"
            )
        else:
            unattended = max(0, classes_total - classes_attended)
            refund_amount = min(
                round_cents(Decimal(payment_amount) * unattended / classes_total),
                payment_amount,
            )
            fee = min(self.policy.late_cancellation_fee, refund_amount)
            description = (
                f"Cancelled after start: {unattended} of {classes_total} "
                f"session(s) unattended"
            )

        if fee:
            description += f", less {format_cents(fee, config.CURRENCY)} cancellation fee"

        net_refund = max(0, refund_amount - fee)
        return RefundBreakdown(
            refund_amount=refund_amount,
            cancellation_fee=fee,
            net_refund=net_refund,
            policy_description=description,
            enrollment_id=enrollment_id,
        )

    def _tier_for(self, days_before: int) -> Optional[RefundTier]:
        matching = [
            t for t in self.policy.pre_start_tiers
            if t.min_days_before_start <= days_before
        ]
        if not matching:
            return None
        return max(matching, key=lambda t: t.min_days_before_start)
