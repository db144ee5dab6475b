"""Attendance records used to prorate cancellation refunds."""

import enum
from datetime import date
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Date,
    Enum,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TimestampMixin


class AttendanceStatus(str, enum.Enum):
    """Status of attendance."""

    PRESENT = "present"
    ABSENT = "absent"
    EXCUSED = "excused"


class Attendance(Base, TimestampMixin):
    """Attendance record for one class session."""

    __tablename__ = "attendances"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("enrollments.id"), nullable=False, index=True
    )
    class_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("classes.id"), nullable=False, index=True
    )
    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, native_enum=False), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "enrollment_id",
            "class_id",
            "date",
            name="unique_enrollment_class_date_attendance",
        ),
    )

    @classmethod
    async def count_attended(
        cls, db_session: AsyncSession, enrollment_id: str, class_id: str
    ) -> int:
        """Number of sessions the enrollment was present for in a class."""
        result = await db_session.execute(
            select(func.count(cls.id)).where(
                cls.enrollment_id == enrollment_id,
                cls.class_id == class_id,
                cls.status == AttendanceStatus.PRESENT,
            )
        )
        return result.scalar_one()
