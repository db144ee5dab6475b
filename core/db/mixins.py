from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from core.db.types import TZDateTime, utcnow


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        TZDateTime,
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


__all__ = ["TimestampMixin"]
