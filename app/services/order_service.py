"""Order lifecycle: pricing, two-phase payment, cancellation and refunds.

DRAFT -> PENDING_PAYMENT -> PAID | PARTIALLY_PAID -> REFUNDED, with
CANCELLED reachable from DRAFT and PENDING_PAYMENT only.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.child import Child
from app.models.class_ import Class
from app.models.discount import DiscountCode, DiscountCodeUsage
from app.models.enrollment import Enrollment
from app.models.order import (
    PAID_STATUSES,
    Order,
    OrderLineItem,
    OrderStatus,
    OrderTransaction,
    PaymentPlanType,
    TransactionKind,
)
from app.models.payment import InstallmentFrequency
from app.services.context import CallerContext
from app.services.discount_engine import DiscountEngine, DiscountResult, UserHistory
from app.services.gateway import GatewayStatus, PaymentGateway
from app.services.installment_service import InstallmentScheduler, parse_frequency
from app.services.notifier import LoggingNotifier, NotificationEvent, Notifier
from app.utils.money import percent_of
from core.config import config
from core.db import commit_or_conflict, commit_with_retry, flush_or_conflict
from core.exceptions.base import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from core.logging import get_logger

logger = get_logger(__name__)

OrderHook = Callable[[Order, CallerContext], Awaitable[None]]

ORDER_CONFLICT_MESSAGE = "Order was modified concurrently; re-fetch and retry"


@dataclass(frozen=True)
class LineItemInput:
    class_id: str
    child_id: str
    unit_amount: Optional[int] = None  # Defaults to the class price


@dataclass(frozen=True)
class PaymentPlan:
    """How checkout collects payment: FULL, SUBSCRIPTION or INSTALLMENTS(count, frequency)."""

    type: PaymentPlanType = PaymentPlanType.FULL
    count: Optional[int] = None
    frequency: Optional[InstallmentFrequency] = None

    def __post_init__(self):
        if self.type == PaymentPlanType.INSTALLMENTS:
            if self.count is None or self.frequency is None:
                raise ValidationException("Installment plans need a count and a frequency")
            object.__setattr__(self, "frequency", parse_frequency(self.frequency))
        elif self.count is not None or self.frequency is not None:
            raise ValidationException(
                f"{self.type.value} payment plans take no installment settings"
            )

    @classmethod
    def full(cls) -> "PaymentPlan":
        return cls(PaymentPlanType.FULL)

    @classmethod
    def subscription(cls) -> "PaymentPlan":
        return cls(PaymentPlanType.SUBSCRIPTION)

    @classmethod
    def installments(cls, count: int, frequency) -> "PaymentPlan":
        return cls(PaymentPlanType.INSTALLMENTS, count=count, frequency=frequency)


@dataclass
class OrderQuote:
    subtotal: int
    sibling_discount: int
    code_discount: int
    tax: int
    total: int
    discount_code_id: Optional[str] = None
    code_result: Optional[DiscountResult] = None
    line_items: List[LineItemInput] = field(default_factory=list)

    @property
    def discount_total(self) -> int:
        return self.sibling_discount + self.code_discount


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    source_reference: str
    amount: int


@dataclass(frozen=True)
class RefundOutcome:
    """Refunds the gateway accepted for one request, and the error that stopped it."""

    requested: int
    refunds: List[GatewayRefund] = field(default_factory=list)
    error: Optional[PaymentProcessingException] = None

    @property
    def refunded(self) -> int:
        return sum(r.amount for r in self.refunds)

    @property
    def refund_ids(self) -> List[str]:
        return [r.refund_id for r in self.refunds]

    @property
    def outstanding(self) -> int:
        return self.requested - self.refunded


class OrderLifecycleManager:
    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway,
        scheduler: InstallmentScheduler = None,
        discount_engine: DiscountEngine = None,
        notifier: Notifier = None,
        tax_rate: Decimal = None,
        on_paid: OrderHook = None,
        on_cancelled: OrderHook = None,
    ):
        self.db_session = db_session
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.scheduler = scheduler or InstallmentScheduler(db_session, gateway, self.notifier)
        self.discount_engine = discount_engine or DiscountEngine()
        self.tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
        self.on_paid = on_paid
        self.on_cancelled = on_cancelled

    # ============== Pricing ==============

    async def calculate(
        self,
        ctx: CallerContext,
        line_items: Sequence[LineItemInput],
        discount_code: str = None,
        apply_sibling_discount: bool = False,
        owner_id: str = None,
        now: datetime = None,
    ) -> OrderQuote:
        """Price a cart without persisting anything."""
        owner_id = owner_id or ctx.caller_id
        if owner_id != ctx.caller_id and not ctx.is_privileged:
            raise ForbiddenException("Cannot price orders for another user")
        if not line_items:
            raise ValidationException("Order must contain at least one line item")

        priced: List[LineItemInput] = []
        program_ids = []
        for item in line_items:
            class_ = await Class.get_by_id(self.db_session, item.class_id)
            if not class_:
                raise NotFoundException(f"Class {item.class_id} not found")
            child = await Child.get_by_id(self.db_session, item.child_id)
            if not child:
                raise NotFoundException(f"Child {item.child_id} not found")
            if child.user_id != owner_id:
                raise ForbiddenException("Child does not belong to the order owner")

            unit_amount = class_.price if item.unit_amount is None else item.unit_amount
            if unit_amount < 0:
                raise ValidationException("Line item amount cannot be negative")
            priced.append(LineItemInput(item.class_id, item.child_id, unit_amount))
            program_ids.append(class_.program_id)

        subtotal = sum(item.unit_amount for item in priced)

        sibling_discount = 0
        if apply_sibling_discount:
            for item in priced:
                siblings = await Enrollment.count_active_siblings(
                    self.db_session, owner_id, exclude_child_id=item.child_id
                )
                result = self.discount_engine.sibling_discount(item.unit_amount, siblings)
                sibling_discount += result.discount_amount

        code_discount = 0
        code_result = None
        discount_code_id = None
        if discount_code:
            code = await DiscountCode.get_by_code(self.db_session, discount_code)
            history = UserHistory(
                completed_orders=await Order.count_paid_by_user(self.db_session, owner_id),
                code_uses=(
                    await DiscountCodeUsage.count_for_user(self.db_session, code.id, owner_id)
                    if code else 0
                ),
            )
            code_result = self.discount_engine.evaluate(
                code,
                subtotal - sibling_discount,
                priced[0].child_id,
                [item.class_id for item in priced],
                history,
                now=now,
                target_program_ids=program_ids,
            )
            if code_result.eligible:
                code_discount = code_result.discount_amount
                discount_code_id = code.id

        taxable = subtotal - sibling_discount - code_discount
        tax = percent_of(taxable, self.tax_rate)
        return OrderQuote(
            subtotal=subtotal,
            sibling_discount=sibling_discount,
            code_discount=code_discount,
            tax=tax,
            total=taxable + tax,
            discount_code_id=discount_code_id,
            code_result=code_result,
            line_items=priced,
        )

    # ============== Lifecycle ==============

    async def create(
        self,
        ctx: CallerContext,
        line_items: Sequence[LineItemInput],
        discount_code: str = None,
        apply_sibling_discount: bool = False,
        owner_id: str = None,
        now: datetime = None,
        commit: bool = True,
    ) -> Order:
        """Price the cart and persist it as a DRAFT order.

        An ineligible discount code is rejected with its reason.
        """
        quote = await self.calculate(
            ctx,
            line_items,
            discount_code=discount_code,
            apply_sibling_discount=apply_sibling_discount,
            owner_id=owner_id,
            now=now,
        )
        if quote.code_result is not None and not quote.code_result.eligible:
            raise ValidationException(
                quote.code_result.reason, data={"reason": quote.code_result.reason}
            )

        order = Order(
            user_id=owner_id or ctx.caller_id,
            status=OrderStatus.DRAFT,
            subtotal=quote.subtotal,
            sibling_discount=quote.sibling_discount,
            discount_total=quote.discount_total,
            tax=quote.tax,
            total=quote.total,
            discount_code_id=quote.discount_code_id,
        )
        for position, item in enumerate(quote.line_items):
            order.line_items.append(
                OrderLineItem(
                    position=position,
                    class_id=item.class_id,
                    child_id=item.child_id,
                    unit_amount=item.unit_amount,
                )
            )
        self.db_session.add(order)
        await self._flush()
        if commit:
            await self._commit(order, "create")

        logger.info(
            f"Created order {order.id} for user {order.user_id}: subtotal {order.subtotal}, "
            f"discount {order.discount_total}, tax {order.tax}, total {order.total}"
        )
        return order

    async def get(self, ctx: CallerContext, order_id: str) -> Order:
        order = await Order.get_by_id(self.db_session, order_id)
        if not order:
            raise NotFoundException(f"Order {order_id} not found")
        ctx.ensure_owner(order.user_id)
        return order

    async def checkout(
        self,
        ctx: CallerContext,
        order_id: str,
        payment_method_ref: str,
        plan: PaymentPlan = None,
    ) -> Order:
        """Authorize payment and move DRAFT -> PENDING_PAYMENT.

        Installment plans authorize only the first installment.
        """
        plan = plan or PaymentPlan.full()
        if not payment_method_ref:
            raise ValidationException("A payment method is required")

        order = await self._get_for_update(ctx, order_id)
        if order.status != OrderStatus.DRAFT:
            raise ConflictException(
                f"Cannot check out an order in {order.status.value} status"
            )

        amount = order.total
        if plan.type == PaymentPlanType.INSTALLMENTS:
            classes = await Class.get_by_ids(self.db_session, order.class_ids)
            if any(not c.installments_enabled for c in classes):
                raise ValidationException("Installments are not available for this order")
            schedule = InstallmentScheduler.preview(
                order.total, plan.count, plan.frequency, datetime.now(timezone.utc).date()
            )
            amount = schedule[0].amount

        order.payment_method_ref = payment_method_ref
        order.plan_type = plan.type
        order.installment_count = plan.count
        order.installment_frequency = plan.frequency.value if plan.frequency else None

        if amount == 0:
            order.status = OrderStatus.PENDING_PAYMENT
            await self._mark_paid(ctx, order, captured_reference=None, captured_amount=0)
            await self._commit(order, "checkout")
            logger.info(f"Order {order.id} is free; marked paid without authorization")
            return order

        result = await self.gateway.authorize(
            amount, payment_method_ref, metadata={"order_id": order.id}
        )
        if result.status == GatewayStatus.FAILED:
            await self.db_session.rollback()
            logger.error(f"Authorization failed for order {order_id}")
            raise PaymentProcessingException("Payment authorization failed", retryable=False)

        order.authorization_token = result.token
        order.status = OrderStatus.PENDING_PAYMENT
        try:
            await self._commit(order, "checkout")
        except ConflictException:
            await self._void_quietly(result.token)
            raise

        logger.info(
            f"Order {order.id} pending payment ({plan.type.value}, authorized {amount} cents)"
        )
        return order

    async def confirm(
        self,
        ctx: CallerContext,
        order_id: str,
        authorization_token: str,
        gateway_status,
    ) -> Order:
        """Capture and settle an authorized order.

        Idempotent per (order, token): replays against an order that is
        already paid return it unchanged. Processing or failed gateway
        statuses leave the order PENDING_PAYMENT. The discount code use is
        reserved before capture, so an exhausted code is never charged for.
        """
        try:
            gateway_status = GatewayStatus(gateway_status)
        except ValueError:
            raise ValidationException(f"Unknown gateway status: {gateway_status}")

        order = await self._get_for_update(ctx, order_id)
        if not authorization_token or order.authorization_token != authorization_token:
            raise ConflictException("Authorization token does not match this order")
        if order.status in PAID_STATUSES or order.status == OrderStatus.REFUNDED:
            logger.info(f"Order {order_id} already settled; confirm is a no-op")
            return order
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise ConflictException(
                f"Cannot confirm an order in {order.status.value} status"
            )
        if gateway_status != GatewayStatus.SUCCEEDED:
            logger.info(f"Order {order_id} confirm deferred: gateway {gateway_status.value}")
            return order

        reserved = await self._reserve_discount_use(order)
        capture_status = await self.gateway.confirm(authorization_token)
        if capture_status != GatewayStatus.SUCCEEDED:
            if reserved:
                await self._release_discount_use(order)
            logger.info(f"Order {order_id} capture is {capture_status.value}; left pending")
            return order

        captured = order.total
        if order.plan_type == PaymentPlanType.INSTALLMENTS:
            captured = InstallmentScheduler.preview(
                order.total,
                order.installment_count,
                order.installment_frequency,
                datetime.now(timezone.utc).date(),
            )[0].amount

        try:
            await self._mark_paid(ctx, order, authorization_token, captured, usage_reserved=True)
            await self._commit(order, "confirm")
        except ConflictException:
            current = await Order.get_by_id(self.db_session, order_id)
            if (
                current is not None
                and current.status in PAID_STATUSES
                and current.authorization_token == authorization_token
            ):
                logger.info(f"Order {order_id} was confirmed concurrently")
                return current
            raise

        self.notifier.notify(
            order.user_id,
            NotificationEvent.ORDER_PAID,
            {"order_id": order.id, "status": order.status.value, "amount_paid": order.amount_paid},
        )
        return order

    async def cancel(self, ctx: CallerContext, order_id: str, commit: bool = True) -> Order:
        """Cancel an unpaid order, voiding any open authorization."""
        order = await self._get_for_update(ctx, order_id)
        if order.status not in (OrderStatus.DRAFT, OrderStatus.PENDING_PAYMENT):
            raise ConflictException(
                f"Cannot cancel an order in {order.status.value} status"
            )

        if order.status == OrderStatus.PENDING_PAYMENT and order.authorization_token:
            await self.gateway.void(order.authorization_token)

        order.status = OrderStatus.CANCELLED
        order.cancelled_at = datetime.now(timezone.utc)
        if self.on_cancelled is not None:
            await self.on_cancelled(order, ctx)
        await self._flush()
        if commit:
            await self._commit(order, "cancel")

        logger.info(f"Cancelled order {order_id}")
        return order

    async def remove_line_item(
        self,
        ctx: CallerContext,
        order_id: str,
        child_id: str,
        class_id: str,
        commit: bool = True,
    ) -> Order:
        """Drop one child's class from an unpaid order and re-price what is left.

        Removing the last line item cancels the order. A PENDING_PAYMENT
        order has its authorization voided and goes back to DRAFT, since
        the authorized amount no longer matches the total.
        """
        order = await self._get_for_update(ctx, order_id)
        if order.status not in (OrderStatus.DRAFT, OrderStatus.PENDING_PAYMENT):
            raise ConflictException(
                f"Cannot change an order in {order.status.value} status"
            )

        removed = [
            item for item in order.line_items
            if item.child_id == child_id and item.class_id == class_id
        ]
        if not removed:
            raise NotFoundException(
                f"Order {order_id} has no line item for child {child_id} in class {class_id}"
            )
        kept = [item for item in order.line_items if item not in removed]
        if not kept:
            return await self.cancel(ctx, order_id, commit=commit)

        code = None
        if order.discount_code_id:
            code = await DiscountCode.get_by_id(self.db_session, order.discount_code_id)
        quote = await self.calculate(
            ctx,
            [LineItemInput(item.class_id, item.child_id, item.unit_amount) for item in kept],
            discount_code=code.code if code else None,
            apply_sibling_discount=order.sibling_discount > 0,
            owner_id=order.user_id,
        )

        if order.status == OrderStatus.PENDING_PAYMENT:
            if order.authorization_token:
                await self.gateway.void(order.authorization_token)
            order.authorization_token = None
            order.status = OrderStatus.DRAFT

        for item in removed:
            order.line_items.remove(item)
        for position, item in enumerate(order.line_items):
            item.position = position
        order.subtotal = quote.subtotal
        order.sibling_discount = quote.sibling_discount
        order.discount_total = quote.discount_total
        order.tax = quote.tax
        order.total = quote.total
        order.discount_code_id = quote.discount_code_id
        await self._flush()
        if commit:
            await self._commit(order, "remove line item")

        logger.info(
            f"Removed child {child_id} in class {class_id} from order {order_id}; "
            f"total now {order.total}"
        )
        return order

    async def refund(
        self, ctx: CallerContext, order_id: str, amount: int, reason: str = None
    ) -> Order:
        """Admin refund against a paid order, capped at what is still refundable.

        The refund is recorded even when a concurrent update wins the first
        commit; a gateway failure part way is raised after the refunded part
        is recorded.
        """
        ctx.ensure_admin()
        order = await self._get_for_update(ctx, order_id)
        if order.status not in PAID_STATUSES:
            raise ConflictException(
                f"Cannot refund an order in {order.status.value} status"
            )
        if amount <= 0:
            raise ValidationException("Refund amount must be positive")
        if amount > order.refundable_amount:
            raise ValidationException(
                f"Refund exceeds refundable amount of {order.refundable_amount} cents"
            )

        outcome = await self.refund_at_gateway(order, amount)

        async def record():
            current = await Order.get_by_id(self.db_session, order_id, for_update=True)
            await self.record_refund(current, outcome, reason)

        await commit_with_retry(self.db_session, record, f"refund on order {order_id}")
        if outcome.error is not None:
            raise outcome.error
        return await Order.get_by_id(self.db_session, order_id)

    async def refund_at_gateway(self, order: Order, amount: int) -> RefundOutcome:
        """Refund through the gateway, newest payments first. Writes nothing.

        Stops at the first gateway failure and reports what was refunded so
        far; never refunds more than the order has been paid. Callers
        persist the outcome with ``record_refund``.
        """
        amount = min(amount, order.refundable_amount)
        refunds: List[GatewayRefund] = []
        refunded = 0
        error = None

        sources = await OrderTransaction.refundable_sources(self.db_session, order.id)
        for reference, available in sources:
            if refunded >= amount:
                break
            part = min(available, amount - refunded)
            try:
                refund_id = await self.gateway.refund(reference, part)
            except PaymentProcessingException as e:
                logger.error(f"Refund of {part} cents on {reference} for order {order.id} failed")
                error = e
                break
            refunds.append(GatewayRefund(refund_id, reference, part))
            refunded += part

        if error is None and refunded < amount:
            error = PaymentProcessingException(
                "No captured payment available to refund", retryable=False
            )
        return RefundOutcome(requested=amount, refunds=refunds, error=error)

    async def record_refund(
        self, order: Order, outcome: RefundOutcome, reason: str = None
    ) -> None:
        """Persist the refunds the gateway accepted (flush only)."""
        for refund in outcome.refunds:
            self.db_session.add(
                OrderTransaction(
                    order_id=order.id,
                    kind=TransactionKind.REFUND,
                    reference=refund.refund_id,
                    source_reference=refund.source_reference,
                    amount=refund.amount,
                    note=reason,
                )
            )
        order.amount_refunded += outcome.refunded
        if (
            outcome.refunded > 0
            and order.amount_refunded >= order.amount_paid
            and order.status in PAID_STATUSES
        ):
            order.status = OrderStatus.REFUNDED
        await self._flush()

        logger.info(
            f"Refunded {outcome.refunded} of {outcome.requested} cents on order {order.id}"
            f"{' (' + reason + ')' if reason else ''}"
        )

    async def record_payment(
        self, order: Order, reference: str, amount: int, note: str = None
    ) -> None:
        """Record an extra capture (e.g. a transfer price difference)."""
        order.amount_paid += amount
        self.db_session.add(
            OrderTransaction(
                order_id=order.id,
                kind=TransactionKind.PAYMENT,
                reference=reference,
                amount=amount,
                note=note,
            )
        )
        await self._flush()

    # ============== Helpers ==============

    async def _mark_paid(
        self,
        ctx: CallerContext,
        order: Order,
        captured_reference: Optional[str],
        captured_amount: int,
        usage_reserved: bool = False,
    ) -> None:
        now = datetime.now(timezone.utc)
        status = OrderStatus.PAID
        if order.plan_type == PaymentPlanType.INSTALLMENTS and order.total > 0:
            plan = await self.scheduler.build_plan(
                order,
                order.installment_count,
                order.installment_frequency,
                order.payment_method_ref,
                first_date=now.date(),
                first_payment_charge_id=captured_reference,
            )
            if not plan.is_complete:
                status = OrderStatus.PARTIALLY_PAID

        if captured_reference:
            self.db_session.add(
                OrderTransaction(
                    order_id=order.id,
                    kind=TransactionKind.PAYMENT,
                    reference=captured_reference,
                    amount=captured_amount,
                    note="Checkout authorization",
                )
            )
        order.amount_paid += captured_amount
        order.status = status
        order.paid_at = now

        if order.discount_code_id:
            if not usage_reserved:
                await self._reserve_discount_use(order)
            self.db_session.add(
                DiscountCodeUsage(
                    discount_code_id=order.discount_code_id,
                    user_id=order.user_id,
                    order_id=order.id,
                    discount_amount=order.discount_total - order.sibling_discount,
                )
            )

        if self.on_paid is not None:
            await self.on_paid(order, ctx)
        await self._flush()
        logger.info(f"Order {order.id} is {order.status.value} ({order.amount_paid} cents paid)")

    async def _reserve_discount_use(self, order: Order) -> bool:
        """Take one use of the order's discount code, if it still has one left."""
        if not order.discount_code_id:
            return False
        order_id, code_id = order.id, order.discount_code_id
        result = await self.db_session.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == code_id,
                or_(
                    DiscountCode.max_uses.is_(None),
                    DiscountCode.current_uses < DiscountCode.max_uses,
                ),
            )
            .values(current_uses=DiscountCode.current_uses + 1)
        )
        if result.rowcount == 0:
            await self.db_session.rollback()
            logger.warning(
                f"Discount code {code_id} ran out of uses before order {order_id} was paid"
            )
            raise ConflictException("Discount code has reached its usage limit")
        return True

    async def _release_discount_use(self, order: Order) -> None:
        await self.db_session.execute(
            update(DiscountCode)
            .where(DiscountCode.id == order.discount_code_id)
            .values(current_uses=DiscountCode.current_uses - 1)
        )
        await self._commit(order, "release discount use")

    async def _get_for_update(self, ctx: CallerContext, order_id: str) -> Order:
        order = await Order.get_by_id(self.db_session, order_id, for_update=True)
        if not order:
            raise NotFoundException(f"Order {order_id} not found")
        ctx.ensure_owner(order.user_id)
        return order

    async def _flush(self) -> None:
        await flush_or_conflict(self.db_session, ORDER_CONFLICT_MESSAGE)

    async def _commit(self, order: Order, action: str) -> None:
        order_id = order.id
        try:
            await commit_or_conflict(self.db_session, ORDER_CONFLICT_MESSAGE)
        except ConflictException:
            logger.info(f"Lost concurrent update on order {order_id} during {action}")
            raise

    async def _void_quietly(self, token: str) -> None:
        try:
            await self.gateway.void(token)
        except PaymentProcessingException:
            logger.error(f"Failed to void orphaned authorization {token}")
