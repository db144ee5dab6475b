"""Tests for discount code evaluation and sibling discounts."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.models.discount import DiscountCode, DiscountType
from app.services.discount_engine import DiscountEngine, UserHistory
from core.exceptions.base import ValidationException

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_code(**overrides) -> DiscountCode:
    fields = dict(
        code="SAVE20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("20"),
        valid_from=NOW - timedelta(days=30),
        valid_until=None,
        max_uses=None,
        current_uses=0,
        max_uses_per_user=None,
        min_order_amount=None,
        applicable_class_ids=[],
        applicable_program_ids=[],
        first_time_only=False,
        is_active=True,
    )
    fields.update(overrides)
    return DiscountCode(**fields)


def evaluate(code, cart_total=10000, class_ids=("class-1",), history=None, **kwargs):
    return DiscountEngine().evaluate(
        code,
        cart_total,
        "child-1",
        list(class_ids),
        history or UserHistory(),
        now=NOW,
        **kwargs,
    )


class TestDiscountCodeEvaluation:
    """Tests for discount code eligibility rules."""

    async def test_percentage_code(self):
        result = evaluate(make_code(), cart_total=10000)
        assert result.eligible is True
        assert result.reason is None
        assert result.discount_amount == 2000

    async def test_percentage_rounds_half_up(self):
        result = evaluate(make_code(discount_value=Decimal("10")), cart_total=1005)
        # 100.5 cents rounds up
        assert result.discount_amount == 101

    async def test_fixed_amount_capped_at_cart_total(self):
        code = make_code(discount_type=DiscountType.FIXED_AMOUNT, discount_value=Decimal("5000"))
        assert evaluate(code, cart_total=8000).discount_amount == 5000
        assert evaluate(code, cart_total=3000).discount_amount == 3000

    async def test_below_minimum_order_amount(self):
        """SAVE20 with a 100 minimum rejects a cart of 50."""
        code = make_code(min_order_amount=100)
        result = evaluate(code, cart_total=50)
        assert result.eligible is False
        assert result.reason == "below minimum order amount"
        assert result.discount_amount == 0

    async def test_unknown_code(self):
        result = evaluate(None)
        assert result.eligible is False
        assert result.reason == "code not found"

    async def test_inactive_code(self):
        result = evaluate(make_code(is_active=False))
        assert result.reason == "code is inactive"

    async def test_not_yet_valid(self):
        result = evaluate(make_code(valid_from=NOW + timedelta(days=1)))
        assert result.reason == "code is not yet valid"

    async def test_expired(self):
        result = evaluate(make_code(valid_until=NOW - timedelta(seconds=1)))
        assert result.reason == "code has expired"

    async def test_global_usage_limit(self):
        result = evaluate(make_code(max_uses=5, current_uses=5))
        assert result.reason == "code usage limit reached"

    async def test_per_user_usage_limit(self):
        result = evaluate(
            make_code(max_uses_per_user=1), history=UserHistory(code_uses=1)
        )
        assert result.reason == "per-user usage limit reached"

    async def test_class_restriction(self):
        code = make_code(applicable_class_ids=["class-9"])
        assert evaluate(code, class_ids=["class-1"]).reason == (
            "code does not apply to selected classes"
        )
        assert evaluate(code, class_ids=["class-1", "class-9"]).eligible is True

    async def test_program_restriction(self):
        code = make_code(applicable_program_ids=["program-1"])
        result = evaluate(code, class_ids=["class-1"], target_program_ids=["program-1"])
        assert result.eligible is True
        result = evaluate(code, class_ids=["class-1"], target_program_ids=["program-2"])
        assert result.eligible is False

    async def test_first_time_only(self):
        code = make_code(first_time_only=True)
        assert evaluate(code, history=UserHistory(completed_orders=0)).eligible is True
        result = evaluate(code, history=UserHistory(completed_orders=2))
        assert result.reason == "code is only valid for first-time customers"

    async def test_first_failing_rule_wins(self):
        code = make_code(is_active=False, min_order_amount=100)
        assert evaluate(code, cart_total=50).reason == "code is inactive"

    async def test_negative_cart_total_is_invalid(self):
        with pytest.raises(ValidationException):
            evaluate(make_code(), cart_total=-1)


class TestSiblingDiscount:
    """Tests for the sibling discount step table."""

    async def test_no_siblings(self):
        result = DiscountEngine().sibling_discount(10000, 0)
        assert result.eligible is False
        assert result.discount_amount == 0

    async def test_default_steps(self):
        engine = DiscountEngine()
        assert engine.sibling_discount(10000, 1).discount_amount == 1000
        assert engine.sibling_discount(10000, 2).discount_amount == 1500
        assert engine.sibling_discount(10000, 3).discount_amount == 2000

    async def test_counts_past_table_use_top_step(self):
        assert DiscountEngine().sibling_discount(10000, 7).discount_amount == 2000

    async def test_configured_steps(self):
        engine = DiscountEngine(sibling_steps={1: Decimal("25"), 2: Decimal("50")})
        assert engine.sibling_discount(8000, 1).discount_amount == 2000
        assert engine.sibling_discount(8000, 4).discount_amount == 4000

    async def test_negative_sibling_count_is_invalid(self):
        with pytest.raises(ValidationException):
            DiscountEngine().sibling_discount(10000, -1)
