"""Background tasks for waitlist management."""

import asyncio
from datetime import datetime, timezone

from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.notifier import CeleryNotifier
from app.services.stripe_service import StripeGateway
from app.tasks.celery_app import celery_app
from core.db.session import async_session_factory
from core.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="process_expired_waitlist_claims")
def process_expired_waitlist_claims() -> int:
    """
    Offer seats whose waitlist claim window lapsed.

    Runs every 15 minutes. Expired entries stay queued for admin
    promotion; the next un-notified entries get a fresh claim window.
    """
    logger.info("Processing expired waitlist claim windows")
    return asyncio.run(_process_expired_waitlist_claims_async())


async def _process_expired_waitlist_claims_async() -> int:
    async with async_session_factory() as db_session:
        manager = EnrollmentLifecycleManager(
            db_session, StripeGateway(), notifier=CeleryNotifier(celery_app)
        )
        return await manager.process_expired_claims(datetime.now(timezone.utc))
