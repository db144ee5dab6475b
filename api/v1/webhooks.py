"""Stripe webhook handler for processing payment events."""

from typing import Any, Dict

import stripe
from fastapi import APIRouter, Depends, Header, Request

from api.deps import get_enrollment_manager, get_installment_scheduler
from app.models.order import Order
from app.services.context import CallerContext
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.gateway import GatewayStatus
from app.services.installment_service import InstallmentScheduler
from app.services.stripe_service import StripeGateway
from core.exceptions.base import ConflictException, ValidationException
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# Events that mean funds for an intent are secured
SUCCESS_EVENTS = ("payment_intent.amount_capturable_updated", "payment_intent.succeeded")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> dict:
    """
    Handle Stripe webhook events.

    Authorizations confirm their order and installment charges settle their
    payment. Deliveries may repeat or arrive out of order; every handler is
    idempotent.
    """
    payload = await request.body()

    try:
        event = StripeGateway.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError):
        raise ValidationException(message="Invalid webhook payload or signature")

    event_type = event["type"]
    intent = event["data"]["object"]
    logger.info(f"Received Stripe webhook: {event_type}")

    if event_type in SUCCESS_EVENTS:
        await handle_intent_succeeded(intent, manager, scheduler)

    elif event_type == "payment_intent.payment_failed":
        await handle_intent_failed(intent, scheduler)

    else:
        logger.info(f"Unhandled event type: {event_type}")

    return {"status": "success"}


async def handle_intent_succeeded(
    intent: Dict[str, Any],
    manager: EnrollmentLifecycleManager,
    scheduler: InstallmentScheduler,
) -> None:
    metadata = intent.get("metadata") or {}

    if metadata.get("installment_payment_id"):
        await scheduler.settle_charge(metadata["installment_payment_id"], succeeded=True)
        return

    order = await Order.get_by_authorization_token(manager.db_session, intent["id"])
    if order is None:
        logger.warning(f"No order for PaymentIntent {intent['id']}")
        return

    try:
        await manager.orders.confirm(
            CallerContext.system(), order.id, intent["id"], GatewayStatus.SUCCEEDED
        )
    except ConflictException as e:
        logger.warning(f"Ignoring confirmation for order {order.id}: {e.message}")


async def handle_intent_failed(
    intent: Dict[str, Any], scheduler: InstallmentScheduler
) -> None:
    metadata = intent.get("metadata") or {}
    error = intent.get("last_payment_error") or {}
    reason = error.get("message") or "Payment failed"

    if metadata.get("installment_payment_id"):
        await scheduler.settle_charge(
            metadata["installment_payment_id"], succeeded=False, failure_reason=reason
        )
        return

    logger.warning(f"Payment failed for PaymentIntent {intent['id']}: {reason}")
