"""Installment plan and installment payment models."""

import enum
from datetime import date, datetime
from typing import List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import Date, Enum, ForeignKey, Integer, String, Text, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, TimestampMixin, TZDateTime


class InstallmentPlanStatus(str, enum.Enum):
    """Status of an installment plan."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DEFAULTED = "defaulted"


class InstallmentFrequency(str, enum.Enum):
    """Frequency of installment payments."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class InstallmentPaymentStatus(str, enum.Enum):
    """Status of an individual installment payment."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InstallmentPlan(Base, TimestampMixin):
    """Installment plan splitting an order total into dated payments (cents)."""

    __tablename__ = "installment_plans"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    num_installments: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[InstallmentFrequency] = mapped_column(
        Enum(InstallmentFrequency), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method_ref: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    status: Mapped[InstallmentPlanStatus] = mapped_column(
        Enum(InstallmentPlanStatus), default=InstallmentPlanStatus.ACTIVE, nullable=False
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    installment_payments: Mapped[List["InstallmentPayment"]] = relationship(
        "InstallmentPayment",
        back_populates="installment_plan",
        cascade="all, delete-orphan",
        order_by="InstallmentPayment.installment_number",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str, for_update: bool = False
    ) -> Optional["InstallmentPlan"]:
        """Get installment plan by ID."""
        stmt = select(cls).where(cls.id == id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().first()

    @classmethod
    async def get_by_order_id(
        cls, db_session: AsyncSession, order_id: str
    ) -> Optional["InstallmentPlan"]:
        result = await db_session.execute(
            select(cls)
            .where(cls.order_id == order_id)
            .order_by(cls.created_at.desc())
        )
        return result.scalars().first()

    @property
    def paid_count(self) -> int:
        """Count of paid installments."""
        return sum(
            1 for p in self.installment_payments
            if p.status == InstallmentPaymentStatus.SUCCEEDED
        )

    @property
    def amount_paid(self) -> int:
        return sum(
            p.amount for p in self.installment_payments
            if p.status == InstallmentPaymentStatus.SUCCEEDED
        )

    @property
    def is_complete(self) -> bool:
        """Check if all installments are paid."""
        return self.paid_count >= len(self.installment_payments)


class InstallmentPayment(Base, TimestampMixin):
    """Individual installment payment record."""

    __tablename__ = "installment_payments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    installment_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("installment_plans.id", ondelete="CASCADE"), nullable=False
    )

    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[InstallmentPaymentStatus] = mapped_column(
        Enum(InstallmentPaymentStatus),
        default=InstallmentPaymentStatus.PENDING,
        nullable=False,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Set while a gateway charge is in flight, cleared once its outcome is recorded
    attempt_started_at: Mapped[Optional[datetime]] = mapped_column(
        TZDateTime, nullable=True
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    installment_plan: Mapped["InstallmentPlan"] = relationship(
        "InstallmentPlan", back_populates="installment_payments"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def in_flight(self) -> bool:
        return self.attempt_started_at is not None

    @classmethod
    async def get_due(
        cls, db_session: AsyncSession, as_of: datetime, stale_before: datetime
    ) -> Sequence["InstallmentPayment"]:
        """Unpaid installments of active plans that are due for an attempt.

        PENDING payments are due on their due_date, FAILED payments once
        next_retry_at has elapsed. In-flight attempts started before
        ``stale_before`` are picked up again so they can be re-sent under
        their original idempotency key.
        """
        idle = cls.attempt_started_at.is_(None)
        result = await db_session.execute(
            select(cls)
            .join(InstallmentPlan, InstallmentPlan.id == cls.installment_plan_id)
            .where(
                InstallmentPlan.status == InstallmentPlanStatus.ACTIVE,
                cls.due_date <= as_of.date(),
                cls.status != InstallmentPaymentStatus.SUCCEEDED,
                or_(
                    idle & (cls.status == InstallmentPaymentStatus.PENDING),
                    idle
                    & (cls.status == InstallmentPaymentStatus.FAILED)
                    & (cls.next_retry_at.isnot(None))
                    & (cls.next_retry_at <= as_of),
                    cls.attempt_started_at < stale_before,
                ),
            )
            .order_by(cls.due_date, cls.installment_number)
        )
        return result.scalars().all()
