"""Child model."""

from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import Boolean, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TimestampMixin


class Child(Base, TimestampMixin):
    """A child belonging to a parent account."""

    __tablename__ = "children"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def full_name(self) -> str:
        """Get child's full name."""
        return f"{self.first_name} {self.last_name}"

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str
    ) -> Optional["Child"]:
        """Get child by ID."""
        result = await db_session.execute(select(cls).where(cls.id == id))
        return result.scalars().first()

    @classmethod
    async def get_by_user_id(
        cls, db_session: AsyncSession, user_id: str
    ) -> Sequence["Child"]:
        """Get all active children for a user."""
        result = await db_session.execute(
            select(cls)
            .where(cls.user_id == user_id, cls.is_active == True)  # noqa: E712
            .order_by(cls.first_name)
        )
        return result.scalars().all()
