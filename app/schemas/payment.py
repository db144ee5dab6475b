"""Installment plan schemas. Amounts are in cents."""

from datetime import date, datetime
from typing import Optional

from pydantic import Field

from app.models.payment import (
    InstallmentFrequency,
    InstallmentPaymentStatus,
    InstallmentPlanStatus,
)
from app.schemas.base import BaseSchema


# ============== Installment Plan Schemas ==============


class InstallmentPreviewRequest(BaseSchema):
    """Preview an installment schedule."""

    total_amount: int = Field(..., ge=0)
    num_installments: int = Field(..., ge=1)
    frequency: str = Field(..., pattern="^(weekly|biweekly|monthly)$")
    start_date: Optional[date] = None


class InstallmentScheduleItem(BaseSchema):
    """Single installment in a schedule."""

    installment_number: int
    due_date: date
    amount: int


class InstallmentPreviewResponse(BaseSchema):
    """Installment schedule preview."""

    total_amount: int
    num_installments: int
    frequency: str
    schedule: list[InstallmentScheduleItem]


class InstallmentPlanCreate(BaseSchema):
    """Create an installment plan for a paid order (admin)."""

    order_id: str
    num_installments: int = Field(..., ge=1)
    frequency: str = Field(..., pattern="^(weekly|biweekly|monthly)$")
    payment_method_id: str
    charge_immediately: bool = True
    start_date: Optional[date] = None


class InstallmentPaymentResponse(BaseSchema):
    """Installment payment response."""

    id: str
    installment_plan_id: str
    installment_number: int
    due_date: date
    amount: int
    status: InstallmentPaymentStatus
    attempt_count: int
    failure_reason: Optional[str] = None
    charge_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None


class InstallmentPlanResponse(BaseSchema):
    """Installment plan response."""

    id: str
    order_id: str
    user_id: str
    total_amount: int
    num_installments: int
    frequency: InstallmentFrequency
    start_date: date
    status: InstallmentPlanStatus
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    installment_payments: list[InstallmentPaymentResponse] = []
