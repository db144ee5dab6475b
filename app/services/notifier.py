"""Fire-and-forget notification collaborator.

Delivery (email, SMS) happens outside this service; the core only hands
off ``(user_id, event, payload)``. Failures are logged and never raised.
"""

from typing import Any, Dict

from core.logging import get_logger

logger = get_logger(__name__)


class NotificationEvent:
    WAITLIST_SPOT_AVAILABLE = "waitlist.spot_available"
    WAITLIST_PROMOTED = "waitlist.promoted"
    ENROLLMENT_ACTIVATED = "enrollment.activated"
    ENROLLMENT_CANCELLED = "enrollment.cancelled"
    ENROLLMENT_TRANSFERRED = "enrollment.transferred"
    REFUND_PENDING = "refund.pending"
    INSTALLMENT_FAILED = "installment.failed"
    INSTALLMENT_PLAN_DEFAULTED = "installment.plan_defaulted"
    ORDER_PAID = "order.paid"


class Notifier:
    """Base notifier. Subclasses implement ``deliver``."""

    def notify(self, user_id: str, event: str, payload: Dict[str, Any] = None) -> None:
        try:
            self.deliver(user_id, event, payload or {})
        except Exception as e:
            logger.warning(f"Notification {event} for user {user_id} failed: {e}")

    def deliver(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes notifications to the log; used in development."""

    def deliver(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify {user_id}: {event} {payload}")


class CeleryNotifier(Notifier):
    """Enqueues notifications for the messaging worker."""

    TASK_NAME = "notifications.deliver"

    def __init__(self, celery_app=None):
        if celery_app is None:
            from app.tasks.celery_app import celery_app
        self.celery_app = celery_app

    def deliver(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        self.celery_app.send_task(
            self.TASK_NAME,
            kwargs={"user_id": user_id, "event": event, "payload": payload},
        )
        logger.debug(f"Queued {event} notification for user {user_id}")
