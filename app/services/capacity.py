"""Seat availability source."""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.class_ import Class
from app.models.enrollment import Enrollment
from core.exceptions.base import NotFoundException


class CapacitySource(Protocol):
    async def get_available_spots(self, class_id: str) -> int:
        ...


class DatabaseCapacitySource:
    """Capacity minus enrollments holding a seat (PENDING or ACTIVE)."""

    def __init__(self, db_session: AsyncSession):
        self.db_session = db_session

    async def get_available_spots(self, class_id: str) -> int:
        class_ = await Class.get_by_id(self.db_session, class_id)
        if not class_:
            raise NotFoundException(f"Class {class_id} not found")
        taken = await Enrollment.count_seat_holders(self.db_session, class_id)
        return max(0, class_.capacity - taken)
