"""Celery task receiving lifecycle notifications queued by CeleryNotifier."""

from typing import Any, Dict

from app.services.notifier import CeleryNotifier
from app.tasks.celery_app import celery_app
from core.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name=CeleryNotifier.TASK_NAME)
def deliver_notification(user_id: str, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deliver a lifecycle notification.

    Email and SMS channels are not wired up; the event is logged so
    operators can follow waitlist offers, failed installments and
    pending refunds.
    """
    logger.info(f"Notification for user {user_id}: {event} {payload}")
    return {"success": True, "user_id": user_id, "event": event}
