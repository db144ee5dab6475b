"""Stripe implementation of the payment gateway."""

from typing import Optional

import stripe

from app.services.gateway import AuthorizationResult, ChargeResult, GatewayStatus
from core.config import config as settings
from core.exceptions.base import PaymentProcessingException
from core.logging import get_logger

logger = get_logger(__name__)

# Initialize Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


# PaymentIntent status -> gateway status. requires_capture means funds are held.
INTENT_STATUS_MAP = {
    "succeeded": GatewayStatus.SUCCEEDED,
    "requires_capture": GatewayStatus.SUCCEEDED,
    "processing": GatewayStatus.PROCESSING,
    "requires_action": GatewayStatus.PROCESSING,
    "requires_confirmation": GatewayStatus.PROCESSING,
    "requires_payment_method": GatewayStatus.FAILED,
    "canceled": GatewayStatus.FAILED,
}


def map_intent_status(status: str) -> GatewayStatus:
    return INTENT_STATUS_MAP.get(status, GatewayStatus.PROCESSING)


def to_payment_error(e: stripe.StripeError, action: str) -> PaymentProcessingException:
    """Translate a Stripe error into a retryable or terminal payment error."""
    if isinstance(e, stripe.CardError):
        logger.error(f"Card error during {action}: {e.user_message}")
        return PaymentProcessingException(
            message=e.user_message or "Card was declined",
            retryable=False,
            data={"decline_code": getattr(e, "code", None)},
        )
    if isinstance(e, (stripe.RateLimitError, stripe.APIConnectionError)):
        logger.error(f"Transient Stripe failure during {action}: {e}")
        return PaymentProcessingException(
            message="Payment provider temporarily unavailable", retryable=True
        )
    if isinstance(e, (stripe.InvalidRequestError, stripe.AuthenticationError)):
        logger.error(f"Stripe rejected {action}: {e}")
        return PaymentProcessingException(message=str(e), retryable=False)
    logger.error(f"Stripe API error during {action}: {e}")
    return PaymentProcessingException(message="Payment provider error", retryable=True)


class StripeGateway:
    """Two-phase authorization via manual-capture PaymentIntents."""

    def __init__(self, currency: str = None):
        self.currency = currency or settings.CURRENCY

    async def authorize(
        self, amount: int, payment_method_ref: str, metadata: Optional[dict] = None
    ) -> AuthorizationResult:
        """Create and confirm a PaymentIntent that holds funds for later capture."""
        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                payment_method=payment_method_ref,
                capture_method="manual",
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise to_payment_error(e, "authorize") from e

        logger.info(f"Authorized PaymentIntent {payment_intent.id} ({payment_intent.status})")
        return AuthorizationResult(
            token=payment_intent.id, status=map_intent_status(payment_intent.status)
        )

    async def confirm(self, token: str) -> GatewayStatus:
        """Capture a held PaymentIntent; already-captured intents report succeeded."""
        try:
            payment_intent = stripe.PaymentIntent.retrieve(token)
            if payment_intent.status == "requires_capture":
                payment_intent = stripe.PaymentIntent.capture(token)
        except stripe.StripeError as e:
            raise to_payment_error(e, "capture") from e

        logger.info(f"Captured PaymentIntent {token} ({payment_intent.status})")
        return map_intent_status(payment_intent.status)

    async def refund(self, token: str, amount: int) -> str:
        """Refund part or all of a captured PaymentIntent."""
        try:
            refund = stripe.Refund.create(payment_intent=token, amount=amount)
        except stripe.StripeError as e:
            raise to_payment_error(e, "refund") from e

        logger.info(f"Created refund {refund.id} for {token} ({amount} cents)")
        return refund.id

    async def charge(
        self,
        amount: int,
        payment_method_ref: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """Charge a saved payment method immediately (off-session)."""
        params = {
            "amount": amount,
            "currency": self.currency,
            "payment_method": payment_method_ref,
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            payment_intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise to_payment_error(e, "charge") from e

        status = map_intent_status(payment_intent.status)
        logger.info(f"Charged PaymentIntent {payment_intent.id} ({payment_intent.status})")
        failure_reason = None
        if status == GatewayStatus.FAILED:
            error = getattr(payment_intent, "last_payment_error", None)
            failure_reason = getattr(error, "message", None) or payment_intent.status
        return ChargeResult(
            charge_id=payment_intent.id, status=status, failure_reason=failure_reason
        )

    async def void(self, token: str) -> None:
        """Cancel an uncaptured PaymentIntent."""
        try:
            stripe.PaymentIntent.cancel(token)
        except stripe.StripeError as e:
            raise to_payment_error(e, "void") from e
        logger.info(f"Voided PaymentIntent {token}")

    @staticmethod
    def construct_event(payload: bytes, sig_header: str) -> stripe.Event:
        """Construct and verify a Stripe webhook event."""
        try:
            event = stripe.Webhook.construct_event(
                payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
            )
            return event
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise
