"""Per-class waitlist queue with priority ordering and claim windows."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.class_ import Class
from app.models.enrollment import Enrollment, EnrollmentStatus
from app.models.waitlist import WaitlistEntry
from app.services.context import CallerContext
from app.services.notifier import LoggingNotifier, NotificationEvent, Notifier
from core.config import config
from core.db import flush_or_conflict
from core.exceptions.base import (
    ConflictException,
    ExpiredClaimException,
    NotFoundException,
)
from core.logging import get_logger

logger = get_logger(__name__)


class WaitlistQueue:
    """Maintains dense 1..N positions per class.

    Ordering is priority entries first, then join time. Positions are
    recomputed from that ordering after every change. Methods flush but
    never commit; the calling lifecycle service or task owns the
    transaction.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Notifier = None,
        claim_window: timedelta = None,
    ):
        self.db_session = db_session
        self.notifier = notifier or LoggingNotifier()
        self.claim_window = claim_window or timedelta(
            hours=config.WAITLIST_CLAIM_WINDOW_HOURS
        )

    async def join(
        self,
        class_id: str,
        enrollment_id: str,
        is_priority: bool = False,
        user_id: str = None,
        now: datetime = None,
    ) -> int:
        """Queue a WAITLIST enrollment and return its position."""
        await self._lock_class(class_id)
        if await WaitlistEntry.get_by_enrollment_id(self.db_session, enrollment_id):
            raise ConflictException("Enrollment is already on the waitlist")

        entries = await WaitlistEntry.get_by_class(self.db_session, class_id)
        entry = WaitlistEntry(
            class_id=class_id,
            enrollment_id=enrollment_id,
            user_id=user_id,
            is_priority=is_priority,
            joined_at=now or datetime.now(timezone.utc),
            position=len(entries) + 1,
        )
        self.db_session.add(entry)
        await flush_or_conflict(self.db_session)

        await self._renumber(class_id)
        logger.info(
            f"Enrollment {enrollment_id} joined waitlist for class {class_id} "
            f"at position {entry.position}{' (priority)' if is_priority else ''}"
        )
        return entry.position

    async def notify_next(
        self, class_id: str, now: datetime = None
    ) -> Optional[str]:
        """Open a claim window for the first entry not yet notified.

        Returns the notified enrollment id, or None when nobody is waiting.
        Entries whose window already lapsed stay queued for an admin.
        """
        now = now or datetime.now(timezone.utc)
        await self._lock_class(class_id)
        entries = await WaitlistEntry.get_by_class(
            self.db_session, class_id, for_update=True
        )
        entry = next((e for e in entries if e.notified_at is None), None)
        if entry is None:
            logger.info(f"No waitlist entries to notify for class {class_id}")
            return None

        entry.notified_at = now
        entry.claim_expires_at = now + self.claim_window
        await flush_or_conflict(self.db_session)

        logger.info(
            f"Notified waitlist enrollment {entry.enrollment_id} for class {class_id}; "
            f"claim expires {entry.claim_expires_at.isoformat()}"
        )
        if entry.user_id:
            self.notifier.notify(
                entry.user_id,
                NotificationEvent.WAITLIST_SPOT_AVAILABLE,
                {
                    "class_id": class_id,
                    "enrollment_id": entry.enrollment_id,
                    "claim_expires_at": entry.claim_expires_at.isoformat(),
                },
            )
        return entry.enrollment_id

    async def claim(self, enrollment_id: str, now: datetime = None) -> Enrollment:
        """Convert a notified entry into a PENDING enrollment.

        Raises ExpiredClaimException, leaving the entry in place, when the
        entry was never notified or its window has passed.
        """
        now = now or datetime.now(timezone.utc)
        entry = await self._get_entry(enrollment_id)
        if not entry.claim_open(now):
            logger.info(f"Rejected claim for enrollment {enrollment_id}: window not open")
            if entry.notified_at is None:
                raise ExpiredClaimException("This waitlist spot has not been offered yet")
            raise ExpiredClaimException()

        enrollment = await self._take(entry)
        enrollment.status = EnrollmentStatus.PENDING
        await flush_or_conflict(self.db_session)
        await self._renumber(entry.class_id)

        logger.info(f"Enrollment {enrollment_id} claimed its waitlist spot")
        return enrollment

    async def promote(self, ctx: CallerContext, enrollment_id: str) -> Enrollment:
        """Admin path: move straight to ACTIVE, skipping notify and claim."""
        ctx.ensure_admin()
        entry = await self._get_entry(enrollment_id)
        enrollment = await self._take(entry)
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.activated_at = datetime.now(timezone.utc)
        await flush_or_conflict(self.db_session)
        await self._renumber(entry.class_id)

        logger.info(f"Enrollment {enrollment_id} promoted from waitlist by {ctx.caller_id}")
        if enrollment.user_id:
            self.notifier.notify(
                enrollment.user_id,
                NotificationEvent.WAITLIST_PROMOTED,
                {"class_id": enrollment.class_id, "enrollment_id": enrollment.id},
            )
        return enrollment

    async def remove(self, enrollment_id: str) -> bool:
        """Drop an entry without changing its enrollment's status."""
        entry = await WaitlistEntry.get_by_enrollment_id(
            self.db_session, enrollment_id, for_update=True
        )
        if entry is None:
            return False
        class_id = entry.class_id
        await self.db_session.delete(entry)
        await flush_or_conflict(self.db_session)
        await self._renumber(class_id)
        logger.info(f"Removed enrollment {enrollment_id} from waitlist for class {class_id}")
        return True

    async def list(self, class_id: str) -> Sequence[WaitlistEntry]:
        return await WaitlistEntry.get_by_class(self.db_session, class_id)

    async def get_entry(self, enrollment_id: str) -> Optional[WaitlistEntry]:
        return await WaitlistEntry.get_by_enrollment_id(self.db_session, enrollment_id)

    async def expired_claims(self, now: datetime = None) -> Sequence[WaitlistEntry]:
        return await WaitlistEntry.get_expired_claims(
            self.db_session, now or datetime.now(timezone.utc)
        )

    async def open_claims(self, class_id: str, now: datetime = None) -> int:
        """Entries currently holding an unexpired offer for a seat."""
        now = now or datetime.now(timezone.utc)
        entries = await WaitlistEntry.get_by_class(self.db_session, class_id)
        return sum(1 for e in entries if e.claim_open(now))

    async def _get_entry(self, enrollment_id: str) -> WaitlistEntry:
        entry = await WaitlistEntry.get_by_enrollment_id(
            self.db_session, enrollment_id, for_update=True
        )
        if entry is None:
            raise NotFoundException(f"No waitlist entry for enrollment {enrollment_id}")
        return entry

    async def _take(self, entry: WaitlistEntry) -> Enrollment:
        """Delete the entry and return its (still WAITLIST) enrollment."""
        await self._lock_class(entry.class_id)
        enrollment = await Enrollment.get_by_id(
            self.db_session, entry.enrollment_id, for_update=True
        )
        if enrollment is None:
            raise NotFoundException(f"Enrollment {entry.enrollment_id} not found")
        if enrollment.status != EnrollmentStatus.WAITLIST:
            raise ConflictException(
                f"Enrollment is {enrollment.status.value}, not waitlisted"
            )
        await self.db_session.delete(entry)
        return enrollment

    async def _renumber(self, class_id: str) -> None:
        entries = await WaitlistEntry.get_by_class(self.db_session, class_id)
        for position, entry in enumerate(entries, start=1):
            if entry.position != position:
                entry.position = position
        await flush_or_conflict(self.db_session)

    async def _lock_class(self, class_id: str) -> Class:
        class_ = await Class.get_by_id(self.db_session, class_id, for_update=True)
        if class_ is None:
            raise NotFoundException(f"Class {class_id} not found")
        return class_
