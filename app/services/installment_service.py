"""Installment schedules, payment attempts and retry handling."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order, OrderStatus, OrderTransaction, TransactionKind
from app.models.payment import (
    InstallmentFrequency,
    InstallmentPayment,
    InstallmentPaymentStatus,
    InstallmentPlan,
    InstallmentPlanStatus,
)
from app.services.context import CallerContext
from app.services.gateway import GatewayStatus, PaymentGateway
from app.services.notifier import LoggingNotifier, NotificationEvent, Notifier
from core.config import config
from core.db import commit_or_conflict, commit_with_retry, flush_or_conflict
from core.exceptions.base import (
    ConflictException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from core.logging import get_logger

logger = get_logger(__name__)

# Orders that can still take an installment plan for what they owe
PLANNABLE_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.PARTIALLY_PAID)

PLAN_CONFLICT_MESSAGE = "Installment plan was modified concurrently; retry"


@dataclass(frozen=True)
class ScheduleItem:
    installment_number: int
    due_date: date
    amount: int


def parse_frequency(frequency: Union[str, InstallmentFrequency]) -> InstallmentFrequency:
    try:
        return InstallmentFrequency(frequency)
    except ValueError:
        raise ValidationException(f"Unknown installment frequency: {frequency}")


class InstallmentScheduler:
    """Builds installment plans and drives their payment attempts.

    Each attempt is claimed (attempt_count incremented, in-flight marker set)
    and committed under the row's version check before the gateway is
    called, so concurrent callers cannot charge the same installment twice.
    The gateway receives ``"{payment_id}:{attempt_count}"`` as its
    idempotency key.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier = None,
        max_attempts: int = None,
        retry_backoff_hours: List[int] = None,
    ):
        self.db_session = db_session
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.max_attempts = max_attempts or config.INSTALLMENT_MAX_ATTEMPTS
        self.retry_backoff_hours = retry_backoff_hours or config.INSTALLMENT_RETRY_BACKOFF_HOURS
        self.stale_after = timedelta(minutes=config.INSTALLMENT_STALE_ATTEMPT_MINUTES)

    # ============== Schedule ==============

    @staticmethod
    def preview(
        total_amount: int,
        count: int,
        frequency: Union[str, InstallmentFrequency],
        first_date: date,
    ) -> List[ScheduleItem]:
        """Split ``total_amount`` cents into ``count`` dated payments.

        Amounts use floor division with the whole remainder on the first
        payment, so the schedule always sums to the total. Monthly dates are
        offset from ``first_date`` (clamped to month end), not chained.
        """
        frequency = parse_frequency(frequency)
        if total_amount < 0:
            raise ValidationException("Total amount cannot be negative")
        if not config.INSTALLMENT_MIN_COUNT <= count <= config.INSTALLMENT_MAX_COUNT:
            raise ValidationException(
                f"Number of installments must be between {config.INSTALLMENT_MIN_COUNT} "
                f"and {config.INSTALLMENT_MAX_COUNT}"
            )

        base_amount = total_amount // count
        remainder = total_amount - base_amount * count

        schedule = []
        for i in range(count):
            if frequency == InstallmentFrequency.WEEKLY:
                due_date = first_date + timedelta(days=7 * i)
            elif frequency == InstallmentFrequency.BIWEEKLY:
                due_date = first_date + timedelta(days=14 * i)
            else:
                due_date = first_date + relativedelta(months=i)

            schedule.append(
                ScheduleItem(
                    installment_number=i + 1,
                    due_date=due_date,
                    amount=base_amount + (remainder if i == 0 else 0),
                )
            )
        return schedule

    async def create(
        self,
        order: Order,
        count: int,
        frequency: Union[str, InstallmentFrequency],
        payment_method_ref: str,
        charge_immediately: bool = True,
        first_date: date = None,
        first_payment_charge_id: str = None,
    ) -> InstallmentPlan:
        """Persist a plan for what the order still owes.

        ``first_payment_charge_id`` records a first installment already
        captured elsewhere (the checkout authorization). Otherwise, with
        ``charge_immediately``, the first payment is attempted now; without
        it every payment is left PENDING for the due-payment job.
        """
        plan = await self.build_plan(
            order,
            count,
            frequency,
            payment_method_ref,
            first_date=first_date,
            first_payment_charge_id=first_payment_charge_id,
        )
        await self._commit("create installment plan")

        if charge_immediately and first_payment_charge_id is None:
            await self.attempt_payment(plan.id, plan.installment_payments[0].id)
        return plan

    async def build_plan(
        self,
        order: Order,
        count: int,
        frequency: Union[str, InstallmentFrequency],
        payment_method_ref: str,
        first_date: date = None,
        first_payment_charge_id: str = None,
    ) -> InstallmentPlan:
        """Create plan rows inside the caller's transaction (flush only).

        The plan covers ``order.total - order.amount_paid``; orders that are
        not awaiting payment, or owe nothing, are rejected.
        """
        if order.status not in PLANNABLE_STATUSES:
            raise ConflictException(
                f"Cannot create an installment plan for an order in {order.status.value} status"
            )
        outstanding = order.total - order.amount_paid
        if outstanding <= 0:
            raise ConflictException(f"Order {order.id} is already paid")

        frequency = parse_frequency(frequency)
        first_date = first_date or datetime.now(timezone.utc).date()
        schedule = self.preview(outstanding, count, frequency, first_date)

        existing = await InstallmentPlan.get_by_order_id(self.db_session, order.id)
        if existing and existing.status == InstallmentPlanStatus.ACTIVE:
            raise ConflictException(f"Order {order.id} already has an active installment plan")

        plan = InstallmentPlan(
            order_id=order.id,
            user_id=order.user_id,
            total_amount=outstanding,
            num_installments=count,
            frequency=frequency,
            start_date=first_date,
            payment_method_ref=payment_method_ref,
            status=InstallmentPlanStatus.ACTIVE,
        )
        now = datetime.now(timezone.utc)
        for item in schedule:
            payment = InstallmentPayment(
                installment_number=item.installment_number,
                due_date=item.due_date,
                amount=item.amount,
                status=InstallmentPaymentStatus.PENDING,
                attempt_count=0,
            )
            if item.installment_number == 1 and first_payment_charge_id:
                payment.status = InstallmentPaymentStatus.SUCCEEDED
                payment.attempt_count = 1
                payment.charge_id = first_payment_charge_id
                payment.paid_at = now
            plan.installment_payments.append(payment)

        if plan.is_complete:
            plan.status = InstallmentPlanStatus.COMPLETED

        self.db_session.add(plan)
        await flush_or_conflict(self.db_session, PLAN_CONFLICT_MESSAGE)

        logger.info(
            f"Created installment plan {plan.id} for order {order.id} "
            f"({count} {frequency.value} payments, first {schedule[0].amount} cents)"
        )
        return plan

    # ============== Attempts ==============

    async def attempt_payment(
        self,
        plan_id: str,
        payment_id: str,
        ctx: CallerContext = None,
        now: datetime = None,
    ) -> InstallmentPayment:
        """Charge one installment.

        SUCCEEDED payments and attempts already in flight are returned
        unchanged. Failures are recorded on the payment rather than raised:
        retryable ones schedule ``next_retry_at`` until the attempt limit,
        terminal ones (and exhausting the limit) default the plan and flag
        the order for collections.
        """
        now = now or datetime.now(timezone.utc)
        plan = await self._get_plan(plan_id)
        if ctx is not None:
            ctx.ensure_owner(plan.user_id)
        payment = self._find_payment(plan, payment_id)

        if payment.status == InstallmentPaymentStatus.SUCCEEDED:
            logger.info(f"Installment payment {payment_id} already succeeded")
            return payment
        if payment.in_flight and payment.attempt_started_at > now - self.stale_after:
            logger.info(f"Installment payment {payment_id} has an attempt in flight")
            return payment
        if plan.status != InstallmentPlanStatus.ACTIVE:
            raise ConflictException(
                f"Cannot charge a {plan.status.value} installment plan"
            )
        if not plan.payment_method_ref:
            raise ValidationException("Installment plan has no payment method on file")

        if not payment.in_flight:
            payment.attempt_count += 1
            payment.idempotency_key = f"{payment.id}:{payment.attempt_count}"
        payment.attempt_started_at = now
        await self._commit("claim installment attempt")

        logger.info(
            f"Charging installment {payment.installment_number} of plan {plan.id} "
            f"(attempt {payment.attempt_count}, {payment.amount} cents)"
        )
        result = None
        error = None
        try:
            result = await self.gateway.charge(
                payment.amount,
                plan.payment_method_ref,
                idempotency_key=payment.idempotency_key,
                metadata={"installment_plan_id": plan.id, "installment_payment_id": payment.id},
            )
        except PaymentProcessingException as e:
            error = e

        async def record():
            current_plan = await self._get_plan(plan_id)
            current = self._find_payment(current_plan, payment_id)
            if error is not None:
                await self._record_failure(
                    current_plan, current, error.message, error.retryable, now
                )
                return
            current.charge_id = result.charge_id
            if result.status == GatewayStatus.SUCCEEDED:
                await self._record_success(current_plan, current, now)
            elif result.status == GatewayStatus.FAILED:
                await self._record_failure(
                    current_plan, current, result.failure_reason or "Payment failed", False, now
                )
            else:
                logger.info(f"Installment payment {payment_id} is processing at the gateway")

        await commit_with_retry(
            self.db_session, record, f"installment payment {payment_id} attempt"
        )
        return payment

    async def settle_charge(
        self,
        payment_id: str,
        succeeded: bool,
        failure_reason: str = None,
        now: datetime = None,
    ) -> Optional[InstallmentPayment]:
        """Record the asynchronous outcome of a processing charge (webhook)."""
        now = now or datetime.now(timezone.utc)
        payment = await self.db_session.get(InstallmentPayment, payment_id)
        if payment is None:
            logger.warning(f"Webhook for unknown installment payment {payment_id}")
            return None
        if payment.status == InstallmentPaymentStatus.SUCCEEDED or not payment.in_flight:
            return payment

        plan = await self._get_plan(payment.installment_plan_id)
        payment = self._find_payment(plan, payment_id)
        if succeeded:
            await self._record_success(plan, payment, now)
        else:
            await self._record_failure(
                plan, payment, failure_reason or "Payment failed", True, now
            )
        await self._commit("settle installment charge")
        return payment

    async def _record_success(
        self, plan: InstallmentPlan, payment: InstallmentPayment, now: datetime
    ) -> None:
        payment.status = InstallmentPaymentStatus.SUCCEEDED
        payment.paid_at = now
        payment.failure_reason = None
        payment.next_retry_at = None
        payment.attempt_started_at = None

        order = await Order.get_by_id(self.db_session, plan.order_id)
        if order is not None:
            order.amount_paid += payment.amount
            self.db_session.add(
                OrderTransaction(
                    order_id=order.id,
                    kind=TransactionKind.PAYMENT,
                    reference=payment.charge_id or payment.idempotency_key,
                    amount=payment.amount,
                    note=f"Installment {payment.installment_number}",
                )
            )

        logger.info(f"Installment payment {payment.id} succeeded")
        if plan.is_complete and plan.status == InstallmentPlanStatus.ACTIVE:
            plan.status = InstallmentPlanStatus.COMPLETED
            logger.info(f"Installment plan {plan.id} completed")
            if order is not None and order.status == OrderStatus.PARTIALLY_PAID:
                order.status = OrderStatus.PAID
                order.paid_at = now
                logger.info(f"Order {order.id} fully paid through installments")

    async def _record_failure(
        self,
        plan: InstallmentPlan,
        payment: InstallmentPayment,
        reason: str,
        retryable: bool,
        now: datetime,
    ) -> None:
        payment.status = InstallmentPaymentStatus.FAILED
        payment.failure_reason = reason
        payment.attempt_started_at = None

        if retryable and payment.attempt_count < self.max_attempts:
            backoff_index = min(payment.attempt_count, len(self.retry_backoff_hours)) - 1
            payment.next_retry_at = now + timedelta(
                hours=self.retry_backoff_hours[max(backoff_index, 0)]
            )
            logger.error(
                f"Installment payment {payment.id} failed (attempt {payment.attempt_count}): "
                f"{reason}; retry at {payment.next_retry_at.isoformat()}"
            )
            self.notifier.notify(
                plan.user_id,
                NotificationEvent.INSTALLMENT_FAILED,
                {"plan_id": plan.id, "payment_id": payment.id, "reason": reason},
            )
            return

        payment.next_retry_at = None
        plan.status = InstallmentPlanStatus.DEFAULTED
        order = await Order.get_by_id(self.db_session, plan.order_id)
        if order is not None:
            order.requires_collections = True
        logger.warning(
            f"Installment plan {plan.id} defaulted after {payment.attempt_count} "
            f"attempt(s): {reason}"
        )
        self.notifier.notify(
            plan.user_id,
            NotificationEvent.INSTALLMENT_PLAN_DEFAULTED,
            {"plan_id": plan.id, "order_id": plan.order_id, "reason": reason},
        )

    # ============== Plan management ==============

    async def cancel(self, ctx: CallerContext, plan_id: str) -> InstallmentPlan:
        """Stop future attempts. Succeeded payments are left as they are."""
        plan = await self._get_plan(plan_id)
        ctx.ensure_owner(plan.user_id)
        if plan.status != InstallmentPlanStatus.ACTIVE:
            raise ConflictException(
                f"Cannot cancel {plan.status.value} installment plan"
            )

        plan.status = InstallmentPlanStatus.CANCELLED
        plan.cancelled_at = datetime.now(timezone.utc)
        await self._commit("cancel installment plan")

        logger.info(f"Cancelled installment plan {plan_id}")
        return plan

    async def get(self, ctx: CallerContext, plan_id: str) -> InstallmentPlan:
        plan = await self._get_plan(plan_id)
        ctx.ensure_owner(plan.user_id)
        return plan

    async def due_payments(self, as_of: datetime = None) -> Sequence[InstallmentPayment]:
        as_of = as_of or datetime.now(timezone.utc)
        return await InstallmentPayment.get_due(
            self.db_session, as_of, stale_before=as_of - self.stale_after
        )

    async def process_due(self, as_of: datetime = None) -> Dict[str, int]:
        """Attempt every due installment. Called by the periodic task."""
        as_of = as_of or datetime.now(timezone.utc)
        due = [(p.installment_plan_id, p.id) for p in await self.due_payments(as_of)]

        counts = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        for plan_id, payment_id in due:
            try:
                payment = await self.attempt_payment(plan_id, payment_id, now=as_of)
            except (ConflictException, ValidationException) as e:
                logger.info(f"Skipped installment payment {payment_id}: {e.message}")
                counts["skipped"] += 1
                continue

            counts["processed"] += 1
            if payment.status == InstallmentPaymentStatus.SUCCEEDED:
                counts["succeeded"] += 1
            elif payment.status == InstallmentPaymentStatus.FAILED:
                counts["failed"] += 1

        logger.info(
            f"Processed {counts['processed']} due installments: "
            f"{counts['succeeded']} succeeded, {counts['failed']} failed, "
            f"{counts['skipped']} skipped"
        )
        return counts

    # ============== Helpers ==============

    async def _get_plan(self, plan_id: str) -> InstallmentPlan:
        plan = await InstallmentPlan.get_by_id(self.db_session, plan_id, for_update=True)
        if not plan:
            raise NotFoundException(f"Installment plan {plan_id} not found")
        return plan

    @staticmethod
    def _find_payment(plan: InstallmentPlan, payment_id: str) -> InstallmentPayment:
        for payment in plan.installment_payments:
            if payment.id == payment_id:
                return payment
        raise NotFoundException(f"Installment payment {payment_id} not found")

    async def _commit(self, action: str) -> None:
        try:
            await commit_or_conflict(self.db_session, PLAN_CONFLICT_MESSAGE)
        except ConflictException:
            logger.info(f"Lost concurrent update during {action}")
            raise
