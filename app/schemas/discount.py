"""Discount code schemas. Amounts are in cents."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from app.models.discount import DiscountType
from app.schemas.base import BaseSchema


class DiscountCodeValidate(BaseSchema):
    """Validate a discount code against a cart."""

    code: str = Field(..., min_length=1, max_length=50)
    cart_total: int = Field(..., ge=0)
    class_ids: list[str] = Field(default_factory=list)
    child_id: Optional[str] = None


class DiscountValidationResponse(BaseSchema):
    """Discount validation result."""

    eligible: bool
    reason: Optional[str] = None
    discount_amount: int = 0


class DiscountCodeCreate(BaseSchema):
    """Create a new discount code (admin only)."""

    code: str = Field(..., min_length=3, max_length=50)
    description: Optional[str] = None
    discount_type: str = Field(..., pattern="^(percentage|fixed_amount)$")
    discount_value: Decimal = Field(..., gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, gt=0)
    max_uses_per_user: Optional[int] = Field(None, gt=0)
    min_order_amount: Optional[int] = Field(None, ge=0)
    applicable_class_ids: list[str] = Field(default_factory=list)
    applicable_program_ids: list[str] = Field(default_factory=list)
    first_time_only: bool = False


class DiscountCodeResponse(BaseSchema):
    """Discount code response."""

    id: str
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    valid_from: datetime
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = None
    current_uses: int
    max_uses_per_user: Optional[int] = None
    min_order_amount: Optional[int] = None
    applicable_class_ids: list[str]
    applicable_program_ids: list[str]
    first_time_only: bool
    is_active: bool
    created_at: datetime
