"""Order-related schemas. Amounts are in cents."""

from datetime import datetime
from typing import Optional

from pydantic import Field, model_validator

from app.models.order import OrderStatus, PaymentPlanType
from app.schemas.base import BaseSchema


# ============== Order Item Schemas ==============


class OrderItemInput(BaseSchema):
    """Input item for order calculation."""

    child_id: str
    class_id: str


class OrderLineItemResponse(BaseSchema):
    """Order line item response."""

    id: str
    position: int
    child_id: str
    class_id: str
    unit_amount: int


# ============== Order Calculation Schemas ==============


class OrderCalculateRequest(BaseSchema):
    """Request to calculate order total."""

    items: list[OrderItemInput] = Field(..., min_length=1)
    discount_code: Optional[str] = None
    apply_sibling_discount: bool = False


class OrderCalculationResponse(BaseSchema):
    """Calculated order totals."""

    subtotal: int
    sibling_discount: int
    code_discount: int
    discount_total: int
    tax: int
    total: int
    discount_eligible: Optional[bool] = None
    discount_reason: Optional[str] = None


# ============== Order Schemas ==============


class OrderCreate(BaseSchema):
    """Create order from cart items."""

    items: list[OrderItemInput] = Field(..., min_length=1)
    discount_code: Optional[str] = None
    apply_sibling_discount: bool = False


class OrderResponse(BaseSchema):
    """Order response."""

    id: str
    user_id: str
    status: OrderStatus
    subtotal: int
    discount_total: int
    sibling_discount: int
    tax: int
    total: int
    discount_code_id: Optional[str] = None
    authorization_token: Optional[str] = None
    plan_type: Optional[PaymentPlanType] = None
    installment_count: Optional[int] = None
    installment_frequency: Optional[str] = None
    amount_paid: int
    amount_refunded: int
    requires_collections: bool
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    line_items: list[OrderLineItemResponse] = []


class OrderListResponse(BaseSchema):
    """List of orders."""

    items: list[OrderResponse]
    total: int


# ============== Payment Flow Schemas ==============


class PaymentPlanInput(BaseSchema):
    """Payment plan chosen at checkout."""

    type: str = Field("full", pattern="^(full|subscription|installments)$")
    count: Optional[int] = Field(None, ge=1)
    frequency: Optional[str] = Field(None, pattern="^(weekly|biweekly|monthly)$")

    @model_validator(mode="after")
    def check_installment_fields(self):
        if self.type == "installments" and (self.count is None or self.frequency is None):
            raise ValueError("Installment plans need count and frequency")
        return self


class CheckoutRequest(BaseSchema):
    """Authorize payment for a DRAFT order."""

    payment_method_id: str = Field(..., min_length=1)
    plan: PaymentPlanInput = Field(default_factory=PaymentPlanInput)


class ConfirmRequest(BaseSchema):
    """Confirm an authorized order."""

    authorization_token: str
    gateway_status: str = Field("succeeded", pattern="^(succeeded|processing|failed)$")


class RefundRequest(BaseSchema):
    """Admin refund against a paid order."""

    amount: int = Field(..., gt=0)
    reason: Optional[str] = None
