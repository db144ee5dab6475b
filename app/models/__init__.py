from app.models.attendance import Attendance, AttendanceStatus
from app.models.child import Child
from app.models.class_ import Class
from app.models.discount import DiscountCode, DiscountCodeUsage, DiscountType
from app.models.enrollment import (
    Enrollment,
    EnrollmentHistory,
    EnrollmentStatus,
    RefundStatus,
)
from app.models.order import (
    Order,
    OrderLineItem,
    OrderStatus,
    OrderTransaction,
    PaymentPlanType,
    TransactionKind,
)
from app.models.payment import (
    InstallmentFrequency,
    InstallmentPayment,
    InstallmentPaymentStatus,
    InstallmentPlan,
    InstallmentPlanStatus,
)
from app.models.waitlist import WaitlistEntry

__all__ = [
    # Class / child
    "Class",
    "Child",
    # Attendance
    "Attendance",
    "AttendanceStatus",
    # Enrollment
    "Enrollment",
    "EnrollmentHistory",
    "EnrollmentStatus",
    "RefundStatus",
    # Waitlist
    "WaitlistEntry",
    # Order
    "Order",
    "OrderLineItem",
    "OrderStatus",
    "OrderTransaction",
    "PaymentPlanType",
    "TransactionKind",
    # Installments
    "InstallmentPlan",
    "InstallmentPlanStatus",
    "InstallmentFrequency",
    "InstallmentPayment",
    "InstallmentPaymentStatus",
    # Discount
    "DiscountCode",
    "DiscountCodeUsage",
    "DiscountType",
]
