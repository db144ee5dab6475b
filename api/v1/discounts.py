"""Discount code API endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_admin_caller, get_caller
from app.models.class_ import Class
from app.models.discount import DiscountCode, DiscountCodeUsage, DiscountType
from app.models.order import Order
from app.schemas.discount import (
    DiscountCodeCreate,
    DiscountCodeResponse,
    DiscountCodeValidate,
    DiscountValidationResponse,
)
from app.services.context import CallerContext
from app.services.discount_engine import DiscountEngine, UserHistory
from core.db import get_db
from core.exceptions.base import ConflictException
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/discounts", tags=["Discounts"])


# ============== Discount Code Validation ==============


@router.post("/validate", response_model=DiscountValidationResponse)
async def validate_discount_code(
    data: DiscountCodeValidate,
    caller: CallerContext = Depends(get_caller),
    db_session: AsyncSession = Depends(get_db),
) -> DiscountValidationResponse:
    """
    Validate a discount code against a cart.

    Returns eligibility, the first failing rule as ``reason`` and the
    discount the code would give.
    """
    logger.info(f"Validate discount code {data.code} for user: {caller.caller_id}")

    code = await DiscountCode.get_by_code(db_session, data.code)
    history = UserHistory(
        completed_orders=await Order.count_paid_by_user(db_session, caller.caller_id),
        code_uses=(
            await DiscountCodeUsage.count_for_user(db_session, code.id, caller.caller_id)
            if code else 0
        ),
    )
    classes = await Class.get_by_ids(db_session, data.class_ids) if data.class_ids else []

    result = DiscountEngine().evaluate(
        code,
        data.cart_total,
        data.child_id,
        data.class_ids,
        history,
        now=datetime.now(timezone.utc),
        target_program_ids=[c.program_id for c in classes],
    )
    return DiscountValidationResponse(
        eligible=result.eligible,
        reason=result.reason,
        discount_amount=result.discount_amount,
    )


# ============== Discount Code Management (Admin) ==============


@router.post("/codes", response_model=DiscountCodeResponse, status_code=201)
async def create_discount_code(
    data: DiscountCodeCreate,
    caller: CallerContext = Depends(get_admin_caller),
    db_session: AsyncSession = Depends(get_db),
) -> DiscountCodeResponse:
    """Create a new discount code (admin only)."""
    code = data.code.strip().upper()
    if await DiscountCode.get_by_code(db_session, code):
        raise ConflictException(message=f"Discount code {code} already exists")

    discount_code = DiscountCode(
        code=code,
        description=data.description,
        discount_type=DiscountType(data.discount_type),
        discount_value=data.discount_value,
        valid_from=data.valid_from or datetime.now(timezone.utc),
        valid_until=data.valid_until,
        max_uses=data.max_uses,
        max_uses_per_user=data.max_uses_per_user,
        min_order_amount=data.min_order_amount,
        applicable_class_ids=data.applicable_class_ids,
        applicable_program_ids=data.applicable_program_ids,
        first_time_only=data.first_time_only,
    )
    db_session.add(discount_code)
    await db_session.commit()
    await db_session.refresh(discount_code)

    logger.info(f"Discount code {code} created by {caller.caller_id}")
    return DiscountCodeResponse.model_validate(discount_code)
