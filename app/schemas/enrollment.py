"""Enrollment and waitlist schemas. Amounts are in cents."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from app.models.enrollment import EnrollmentStatus, RefundStatus
from app.schemas.base import BaseSchema
from app.schemas.order import OrderResponse


class EnrollmentCreate(BaseSchema):
    """Enroll a child in a class."""

    child_id: str
    class_id: str
    discount_code: Optional[str] = None
    apply_sibling_discount: bool = False
    is_priority: bool = False  # Admin only


class EnrollmentResponse(BaseSchema):
    """Enrollment response."""

    id: str
    child_id: str
    class_id: str
    user_id: str
    order_id: Optional[str] = None
    status: EnrollmentStatus
    base_price: int
    discount_amount: int
    final_price: int
    discount_code: Optional[str] = None
    notes: Optional[str] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_status: RefundStatus
    refund_amount_due: int
    refunded_amount: int
    created_at: datetime


class EnrollmentCreateResponse(BaseSchema):
    """Result of an enrollment request: a payable order or a waitlist position."""

    enrollment: EnrollmentResponse
    order: Optional[OrderResponse] = None
    waitlist_position: Optional[int] = None


class EnrollmentListResponse(BaseSchema):
    """List of enrollments."""

    items: list[EnrollmentResponse]
    total: int


class EnrollmentCancel(BaseSchema):
    """Cancel enrollment request."""

    reason: Optional[str] = Field(None, max_length=500)


class CancellationRefundPreview(BaseSchema):
    """Refund breakdown for cancelling now."""

    enrollment_id: Optional[str] = None
    refund_amount: int
    cancellation_fee: int
    net_refund: int
    policy_description: str


class CancellationResponse(BaseSchema):
    """Result of a cancellation."""

    enrollment: EnrollmentResponse
    refund: Optional[CancellationRefundPreview] = None
    refunded: int
    refund_pending: bool


class EnrollmentTransfer(BaseSchema):
    """Transfer enrollment to different class."""

    new_class_id: str


class TransferResponse(BaseSchema):
    """Result of a transfer."""

    enrollment: EnrollmentResponse
    from_class_id: str
    price_delta: int
    charge_id: Optional[str] = None
    refunded: int
    refund_pending: bool


class EnrollmentHistoryResponse(BaseSchema):
    """One enrollment status change or transfer."""

    id: str
    enrollment_id: str
    from_status: Optional[EnrollmentStatus] = None
    to_status: EnrollmentStatus
    from_class_id: Optional[str] = None
    to_class_id: Optional[str] = None
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime


# ============== Waitlist Schemas ==============


class WaitlistClaimRequest(BaseSchema):
    """Claim an offered waitlist seat."""

    discount_code: Optional[str] = None


class WaitlistEntryResponse(BaseSchema):
    """Waitlist entry with position information."""

    id: str
    class_id: str
    enrollment_id: str
    user_id: Optional[str] = None
    position: int
    is_priority: bool
    joined_at: datetime
    notified_at: Optional[datetime] = None
    claim_expires_at: Optional[datetime] = None


class WaitlistListResponse(BaseSchema):
    """Waitlist for a class in queue order."""

    class_id: str
    items: list[WaitlistEntryResponse]
    total: int
