"""Per-class waitlist entries."""

from datetime import datetime
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, TZDateTime, utcnow


class WaitlistEntry(Base):
    """A waitlisted enrollment's place in its class queue.

    Positions are dense (1..N) per class and are always recomputed from
    (is_priority, joined_at), never patched in place.
    """

    __tablename__ = "waitlist_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    class_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("classes.id"), nullable=False, index=True
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("enrollments.id"), nullable=False, unique=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=utcnow, nullable=False
    )
    notified_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(
        TZDateTime, nullable=True, index=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    async def get_by_enrollment_id(
        cls, db_session: AsyncSession, enrollment_id: str, for_update: bool = False
    ) -> Optional["WaitlistEntry"]:
        stmt = select(cls).where(cls.enrollment_id == enrollment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().first()

    @classmethod
    async def get_by_class(
        cls, db_session: AsyncSession, class_id: str, for_update: bool = False
    ) -> Sequence["WaitlistEntry"]:
        """Entries for a class in queue order."""
        stmt = (
            select(cls)
            .where(cls.class_id == class_id)
            .order_by(cls.is_priority.desc(), cls.joined_at, cls.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db_session.execute(stmt)
        return result.scalars().all()

    @classmethod
    async def get_expired_claims(
        cls, db_session: AsyncSession, now: datetime
    ) -> Sequence["WaitlistEntry"]:
        """Notified entries whose claim window has passed."""
        result = await db_session.execute(
            select(cls)
            .where(
                cls.claim_expires_at.isnot(None),
                cls.claim_expires_at < now,
            )
            .order_by(cls.class_id, cls.position)
        )
        return result.scalars().all()

    def claim_open(self, now: datetime) -> bool:
        return (
            self.notified_at is not None
            and self.claim_expires_at is not None
            and now <= self.claim_expires_at
        )
