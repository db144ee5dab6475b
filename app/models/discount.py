"""Discount code and usage tracking models."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TimestampMixin, TZDateTime, utcnow


class DiscountType(str, enum.Enum):
    """Type of discount."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class DiscountCode(Base, TimestampMixin):
    """Discount/promo code model."""

    __tablename__ = "discount_codes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    discount_type: Mapped[DiscountType] = mapped_column(
        Enum(DiscountType), nullable=False
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False
    )  # Percentage (0-100) or fixed amount in cents

    # Validity period
    valid_from: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=utcnow
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    # Usage limits (null = unlimited)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_uses_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Restrictions
    min_order_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    applicable_class_ids: Mapped[List[str]] = mapped_column(
        JSON, nullable=False, default=list
    )  # Empty = all classes
    applicable_program_ids: Mapped[List[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    first_time_only: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str
    ) -> Optional["DiscountCode"]:
        """Get discount code by ID."""
        result = await db_session.execute(select(cls).where(cls.id == id))
        return result.scalars().first()

    @classmethod
    async def get_by_code(
        cls, db_session: AsyncSession, code: str
    ) -> Optional["DiscountCode"]:
        """Get discount code by code string."""
        result = await db_session.execute(
            select(cls).where(cls.code == code.strip().upper())
        )
        return result.scalars().first()

    @classmethod
    async def get_all_active(
        cls, db_session: AsyncSession
    ) -> Sequence["DiscountCode"]:
        """Get all active discount codes."""
        result = await db_session.execute(
            select(cls)
            .where(cls.is_active == True)  # noqa: E712
            .order_by(cls.created_at.desc())
        )
        return result.scalars().all()


class DiscountCodeUsage(Base):
    """One redemption of a discount code by a user's paid order."""

    __tablename__ = "discount_code_usages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    discount_code_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("discount_codes.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, unique=True
    )
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_at: Mapped[datetime] = mapped_column(TZDateTime, default=utcnow, nullable=False)

    @classmethod
    async def count_for_user(
        cls, db_session: AsyncSession, discount_code_id: str, user_id: str
    ) -> int:
        result = await db_session.execute(
            select(func.count(cls.id)).where(
                cls.discount_code_id == discount_code_id,
                cls.user_id == user_id,
            )
        )
        return result.scalar_one()
