"""Enrollment model for child-to-class registration."""

import enum
from datetime import datetime
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import (
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TimestampMixin, TZDateTime, utcnow


class EnrollmentStatus(str, enum.Enum):
    """Status of an enrollment."""

    PENDING = "pending"  # Awaiting payment
    ACTIVE = "active"  # Paid and enrolled
    COMPLETED = "completed"  # Class finished
    CANCELLED = "cancelled"
    WAITLIST = "waitlist"


class RefundStatus(str, enum.Enum):
    """Refund reconciliation state for a cancelled enrollment."""

    NONE = "none"
    REFUNDED = "refunded"
    REFUND_PENDING = "refund_pending"  # Gateway refund failed, needs manual retry


SEAT_HOLDING_STATUSES = (EnrollmentStatus.PENDING, EnrollmentStatus.ACTIVE)


class Enrollment(Base, TimestampMixin):
    """Enrollment record linking a child to a class. Amounts are in cents."""

    __tablename__ = "enrollments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    child_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("children.id"), nullable=False, index=True
    )
    class_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("classes.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # Set once the paying order reaches PAID/PARTIALLY_PAID
    order_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True, index=True
    )

    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus), default=EnrollmentStatus.PENDING, nullable=False
    )

    # Pricing snapshot
    base_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    activated_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    refund_status: Mapped[RefundStatus] = mapped_column(
        Enum(RefundStatus), default=RefundStatus.NONE, nullable=False
    )
    refund_amount_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        # At most one non-cancelled enrollment per child and class
        Index(
            "uq_enrollment_open_child_class",
            "child_id",
            "class_id",
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str, for_update: bool = False
    ) -> Optional["Enrollment"]:
        """Get enrollment by ID."""
        stmt = select(cls).where(cls.id == id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().first()

    @classmethod
    async def get_by_user_id(
        cls, db_session: AsyncSession, user_id: str, status: EnrollmentStatus = None
    ) -> Sequence["Enrollment"]:
        """Get all enrollments for a user."""
        conditions = [cls.user_id == user_id]
        if status:
            conditions.append(cls.status == status)

        result = await db_session.execute(
            select(cls).where(*conditions).order_by(cls.created_at.desc())
        )
        return result.scalars().all()

    @classmethod
    async def get_open_by_child_and_class(
        cls, db_session: AsyncSession, child_id: str, class_id: str
    ) -> Optional["Enrollment"]:
        """Find the child's non-cancelled enrollment in a class, if any."""
        result = await db_session.execute(
            select(cls).where(
                cls.child_id == child_id,
                cls.class_id == class_id,
                cls.status != EnrollmentStatus.CANCELLED,
            )
        )
        return result.scalars().first()

    @classmethod
    async def get_pending_for_line_item(
        cls, db_session: AsyncSession, child_id: str, class_id: str
    ) -> Optional["Enrollment"]:
        result = await db_session.execute(
            select(cls).where(
                cls.child_id == child_id,
                cls.class_id == class_id,
                cls.status == EnrollmentStatus.PENDING,
            )
        )
        return result.scalars().first()

    @classmethod
    async def get_by_order_id(
        cls, db_session: AsyncSession, order_id: str
    ) -> Sequence["Enrollment"]:
        """Enrollments paid for by an order (derived link, never stored on Order)."""
        result = await db_session.execute(
            select(cls).where(cls.order_id == order_id)
        )
        return result.scalars().all()

    @classmethod
    async def count_seat_holders(cls, db_session: AsyncSession, class_id: str) -> int:
        """Enrollments currently holding a seat in a class."""
        result = await db_session.execute(
            select(func.count(cls.id)).where(
                cls.class_id == class_id,
                cls.status.in_(SEAT_HOLDING_STATUSES),
            )
        )
        return result.scalar_one()

    @classmethod
    async def count_active_siblings(
        cls, db_session: AsyncSession, user_id: str, exclude_child_id: str = None
    ) -> int:
        """Distinct other children of the same parent with an active enrollment."""
        conditions = [
            cls.user_id == user_id,
            cls.status == EnrollmentStatus.ACTIVE,
        ]
        if exclude_child_id:
            conditions.append(cls.child_id != exclude_child_id)
        result = await db_session.execute(
            select(func.count(func.distinct(cls.child_id))).where(*conditions)
        )
        return result.scalar_one()

    @classmethod
    async def get_refund_pending(
        cls, db_session: AsyncSession
    ) -> Sequence["Enrollment"]:
        result = await db_session.execute(
            select(cls)
            .where(cls.refund_status == RefundStatus.REFUND_PENDING)
            .order_by(cls.cancelled_at)
        )
        return result.scalars().all()

    @property
    def is_cancellable(self) -> bool:
        """Check if enrollment can be cancelled."""
        return self.status in (
            EnrollmentStatus.PENDING,
            EnrollmentStatus.WAITLIST,
            EnrollmentStatus.ACTIVE,
        )


class EnrollmentHistory(Base):
    """Append-only log of enrollment status changes and class transfers."""

    __tablename__ = "enrollment_history"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("enrollments.id"), nullable=False, index=True
    )
    from_status: Mapped[Optional[EnrollmentStatus]] = mapped_column(
        Enum(EnrollmentStatus), nullable=True
    )
    to_status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus), nullable=False
    )
    from_class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    to_class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=utcnow, nullable=False
    )

    @classmethod
    async def get_for_enrollment(
        cls, db_session: AsyncSession, enrollment_id: str
    ) -> Sequence["EnrollmentHistory"]:
        result = await db_session.execute(
            select(cls)
            .where(cls.enrollment_id == enrollment_id)
            .order_by(cls.created_at, cls.id)
        )
        return result.scalars().all()
