"""Discount code evaluation and sibling discounts.

Pure calculations: no database access and no side effects. Business-rule
failures come back as an ineligible result with a reason; only malformed
input raises.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from app.models.discount import DiscountCode, DiscountType
from app.utils.money import percent_of
from core.config import config
from core.exceptions.base import ValidationException


@dataclass(frozen=True)
class UserHistory:
    """What the engine needs to know about the purchasing user."""

    completed_orders: int = 0
    code_uses: int = 0


@dataclass(frozen=True)
class DiscountResult:
    eligible: bool
    reason: Optional[str]
    discount_amount: int

    @classmethod
    def rejected(cls, reason: str) -> "DiscountResult":
        return cls(eligible=False, reason=reason, discount_amount=0)

    @classmethod
    def accepted(cls, amount: int) -> "DiscountResult":
        return cls(eligible=True, reason=None, discount_amount=amount)


class DiscountEngine:
    def __init__(self, sibling_steps: Mapping[int, Decimal] = None):
        steps = sibling_steps if sibling_steps is not None else config.SIBLING_DISCOUNT_STEPS
        self.sibling_steps = {int(k): Decimal(v) for k, v in steps.items()}

    def evaluate(
        self,
        code: Optional[DiscountCode],
        cart_total: int,
        target_child_id: Optional[str],
        target_class_ids: Iterable[str],
        user_history: UserHistory,
        now: datetime = None,
        target_program_ids: Iterable[str] = (),
    ) -> DiscountResult:
        """Check a code against a cart; the first failing rule wins."""
        if cart_total < 0:
            raise ValidationException("Cart total cannot be negative")
        now = now or datetime.now(timezone.utc)

        if code is None:
            return DiscountResult.rejected("code not found")
        if not code.is_active:
            return DiscountResult.rejected("code is inactive")

        if code.valid_from and now < code.valid_from:
            return DiscountResult.rejected("code is not yet valid")
        if code.valid_until and now > code.valid_until:
            return DiscountResult.rejected("code has expired")

        if code.max_uses is not None and (code.current_uses or 0) >= code.max_uses:
            return DiscountResult.rejected("code usage limit reached")
        if (
            code.max_uses_per_user is not None
            and user_history.code_uses >= code.max_uses_per_user
        ):
            return DiscountResult.rejected("per-user usage limit reached")

        if code.min_order_amount is not None and cart_total < code.min_order_amount:
            return DiscountResult.rejected("below minimum order amount")

        applicable_classes = set(code.applicable_class_ids or [])
        applicable_programs = set(code.applicable_program_ids or [])
        if applicable_classes or applicable_programs:
            matches = bool(applicable_classes & set(target_class_ids)) or bool(
                applicable_programs & set(p for p in target_program_ids if p)
            )
            if not matches:
                return DiscountResult.rejected("code does not apply to selected classes")

        if code.first_time_only and user_history.completed_orders > 0:
            return DiscountResult.rejected("code is only valid for first-time customers")

        return DiscountResult.accepted(self.code_amount(code, cart_total))

    @staticmethod
    def code_amount(code: DiscountCode, cart_total: int) -> int:
        if code.discount_type == DiscountType.PERCENTAGE:
            return min(percent_of(cart_total, code.discount_value), cart_total)
        return min(int(code.discount_value), cart_total)

    def sibling_percent(self, sibling_count: int) -> Decimal:
        """Step for the given number of active siblings; counts past the table use the top step."""
        eligible = [k for k in self.sibling_steps if k <= sibling_count]
        if not eligible:
            return Decimal("0")
        return self.sibling_steps[max(eligible)]

    def sibling_discount(self, cart_total: int, sibling_count: int) -> DiscountResult:
        """Discount from the sibling step table; independent of any code."""
        if cart_total < 0:
            raise ValidationException("Cart total cannot be negative")
        if sibling_count < 0:
            raise ValidationException("Sibling count cannot be negative")

        percent = self.sibling_percent(sibling_count)
        if percent <= 0:
            return DiscountResult.rejected("no active siblings")
        return DiscountResult.accepted(min(percent_of(cart_total, percent), cart_total))
