"""Order and OrderLineItem models for purchase tracking."""

import enum
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, TimestampMixin, TZDateTime, utcnow


class OrderStatus(str, enum.Enum):
    """Status of an order."""

    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentPlanType(str, enum.Enum):
    """How an order is paid at checkout."""

    FULL = "full"
    SUBSCRIPTION = "subscription"
    INSTALLMENTS = "installments"


PAID_STATUSES = (OrderStatus.PAID, OrderStatus.PARTIALLY_PAID)


class Order(Base, TimestampMixin):
    """Order record for purchases. All amounts are in cents."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus), default=OrderStatus.DRAFT, nullable=False, index=True
    )

    # Pricing
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_code_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("discount_codes.id"), nullable=True, index=True
    )
    sibling_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Gateway
    authorization_token: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    payment_method_ref: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Payment plan chosen at checkout
    plan_type: Mapped[Optional[PaymentPlanType]] = mapped_column(
        Enum(PaymentPlanType), nullable=True
    )
    installment_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    installment_frequency: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True
    )

    # Money movement
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requires_collections: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    line_items: Mapped[List["OrderLineItem"]] = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    async def get_by_id(
        cls, db_session: AsyncSession, id: str, for_update: bool = False
    ) -> Optional["Order"]:
        """Get order by ID with line items."""
        stmt = select(cls).where(cls.id == id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().first()

    @classmethod
    async def get_by_authorization_token(
        cls, db_session: AsyncSession, token: str
    ) -> Optional["Order"]:
        """Get order by gateway authorization token (webhook lookup)."""
        result = await db_session.execute(
            select(cls).where(cls.authorization_token == token)
        )
        return result.scalars().first()

    @classmethod
    async def get_by_user_id(
        cls, db_session: AsyncSession, user_id: str, limit: int = 50
    ) -> Sequence["Order"]:
        """Get orders for a user."""
        result = await db_session.execute(
            select(cls)
            .where(cls.user_id == user_id)
            .order_by(cls.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    @classmethod
    async def get_open_for_line_item(
        cls, db_session: AsyncSession, user_id: str, child_id: str, class_id: str
    ) -> Optional["Order"]:
        """Unpaid (DRAFT/PENDING_PAYMENT) order of the user that contains a child's class."""
        result = await db_session.execute(
            select(cls)
            .join(OrderLineItem, OrderLineItem.order_id == cls.id)
            .where(
                cls.user_id == user_id,
                cls.status.in_((OrderStatus.DRAFT, OrderStatus.PENDING_PAYMENT)),
                OrderLineItem.child_id == child_id,
                OrderLineItem.class_id == class_id,
            )
            .order_by(cls.created_at.desc())
        )
        return result.scalars().first()

    @classmethod
    async def count_paid_by_user(
        cls, db_session: AsyncSession, user_id: str, exclude_order_id: str = None
    ) -> int:
        """Orders the user has paid for (first-time customer checks)."""
        conditions = [
            cls.user_id == user_id,
            cls.status.in_(PAID_STATUSES + (OrderStatus.REFUNDED,)),
        ]
        if exclude_order_id:
            conditions.append(cls.id != exclude_order_id)
        result = await db_session.execute(select(func.count(cls.id)).where(*conditions))
        return result.scalar_one()

    @property
    def refundable_amount(self) -> int:
        return max(0, self.amount_paid - self.amount_refunded)

    @property
    def class_ids(self) -> List[str]:
        return [item.class_id for item in self.line_items]


class OrderLineItem(Base):
    """One child in one class within an order."""

    __tablename__ = "order_line_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    class_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("classes.id"), nullable=False, index=True
    )
    child_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("children.id"), nullable=False, index=True
    )
    unit_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="line_items")


class TransactionKind(str, enum.Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class OrderTransaction(Base):
    """Money moved at the gateway for an order.

    PAYMENT rows are keyed by the captured reference (authorization token or
    charge id); REFUND rows point back at the payment they refund through
    ``source_reference``.
    """

    __tablename__ = "order_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[TransactionKind] = mapped_column(Enum(TransactionKind), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    source_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=utcnow, nullable=False
    )

    @classmethod
    async def get_for_order(
        cls, db_session: AsyncSession, order_id: str
    ) -> Sequence["OrderTransaction"]:
        result = await db_session.execute(
            select(cls)
            .where(cls.order_id == order_id)
            .order_by(cls.created_at, cls.id)
        )
        return result.scalars().all()

    @classmethod
    async def refundable_sources(
        cls, db_session: AsyncSession, order_id: str
    ) -> List[Tuple[str, int]]:
        """(payment reference, amount still refundable), most recent payment first."""
        transactions = await cls.get_for_order(db_session, order_id)
        refunded: Dict[str, int] = {}
        for t in transactions:
            if t.kind == TransactionKind.REFUND and t.source_reference:
                refunded[t.source_reference] = refunded.get(t.source_reference, 0) + t.amount

        sources = []
        for t in reversed(transactions):
            if t.kind != TransactionKind.PAYMENT:
                continue
            remaining = t.amount - refunded.pop(t.reference, 0)
            if remaining > 0:
                sources.append((t.reference, remaining))
        return sources
