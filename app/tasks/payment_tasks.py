"""Celery tasks for installment charging and retries."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

from app.services.installment_service import InstallmentScheduler
from app.services.notifier import CeleryNotifier
from app.services.stripe_service import StripeGateway
from app.tasks.celery_app import celery_app
from core.db.session import async_session_factory
from core.exceptions.base import CustomException
from core.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="process_due_installments")
def process_due_installments() -> Dict[str, Any]:
    """Periodic task charging every due installment.

    Runs hourly via Celery Beat. Covers first attempts on the due date,
    retries once ``next_retry_at`` has elapsed (1h, 4h, 12h backoff by
    default) and attempts whose outcome was never recorded.
    """
    logger.info("Starting due installment processing")
    counts = asyncio.run(_process_due_installments_async())
    return {"success": True, **counts}


async def _process_due_installments_async() -> Dict[str, int]:
    async with async_session_factory() as db:
        scheduler = InstallmentScheduler(db, StripeGateway(), CeleryNotifier(celery_app))
        return await scheduler.process_due(datetime.now(timezone.utc))


@celery_app.task(name="attempt_installment_payment")
def attempt_installment_payment(plan_id: str, payment_id: str) -> Dict[str, Any]:
    """Charge one installment on demand (manual retry)."""
    logger.info(f"Attempting installment payment {payment_id} of plan {plan_id}")
    try:
        return asyncio.run(_attempt_installment_payment_async(plan_id, payment_id))
    except CustomException as e:
        logger.error(f"Installment payment {payment_id} not attempted: {e.message}")
        return {"success": False, "error": e.message}


async def _attempt_installment_payment_async(plan_id: str, payment_id: str) -> Dict[str, Any]:
    async with async_session_factory() as db:
        scheduler = InstallmentScheduler(db, StripeGateway(), CeleryNotifier(celery_app))
        payment = await scheduler.attempt_payment(plan_id, payment_id)
        return {
            "success": True,
            "payment_id": payment.id,
            "status": payment.status.value,
            "attempt_count": payment.attempt_count,
        }
