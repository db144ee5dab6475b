"""Class model: the capacity-limited offering children enroll in."""

from datetime import date
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import Boolean, Date, Integer, String, Text, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TimestampMixin


class Class(Base, TimestampMixin):
    """Class offering. Price is in cents."""

    __tablename__ = "classes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    program_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    installments_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str, for_update: bool = False
    ) -> Optional["Class"]:
        """Get class by ID, optionally locking the row."""
        stmt = select(cls).where(cls.id == id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().first()

    @classmethod
    async def get_by_ids(
        cls, db_session: AsyncSession, ids: Sequence[str]
    ) -> Sequence["Class"]:
        result = await db_session.execute(select(cls).where(cls.id.in_(list(ids))))
        return result.scalars().all()
