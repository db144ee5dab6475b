"""Enrollment lifecycle: seats, waitlist routing, activation, cancellation and transfers.

PENDING <-> WAITLIST -> ACTIVE -> COMPLETED, with CANCELLED reachable from
PENDING, WAITLIST and ACTIVE. Enrollments become ACTIVE only when the order
paying for them is confirmed (see ``activate_for_order``).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.attendance import Attendance
from app.models.child import Child
from app.models.class_ import Class
from app.models.enrollment import (
    Enrollment,
    EnrollmentHistory,
    EnrollmentStatus,
    RefundStatus,
)
from app.models.order import PAID_STATUSES, Order, OrderStatus
from app.models.payment import InstallmentPlan, InstallmentPlanStatus
from app.services.capacity import CapacitySource, DatabaseCapacitySource
from app.services.context import CallerContext
from app.services.gateway import GatewayStatus, PaymentGateway
from app.services.notifier import LoggingNotifier, NotificationEvent, Notifier
from app.services.order_service import (
    LineItemInput,
    OrderLifecycleManager,
    RefundOutcome,
)
from app.services.refund_calculator import RefundBreakdown, RefundCalculator
from app.services.waitlist_service import WaitlistQueue
from app.utils.money import percent_of, round_cents
from core.db import commit_or_conflict, commit_with_retry, flush_or_conflict
from core.exceptions.base import (
    ConflictException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from core.logging import get_logger

logger = get_logger(__name__)

ENROLLMENT_CONFLICT_MESSAGE = "Enrollment was modified concurrently; re-fetch and retry"
ALREADY_ENROLLED_MESSAGE = "Child is already enrolled in this class"


@dataclass
class EnrollmentResult:
    enrollment: Enrollment
    order: Optional[Order] = None
    waitlist_position: Optional[int] = None


@dataclass
class CancellationResult:
    enrollment: Enrollment
    refund: Optional[RefundBreakdown] = None
    refunded: int = 0
    refund_pending: bool = False


@dataclass
class TransferResult:
    enrollment: Enrollment
    from_class_id: str
    price_delta: int
    charge_id: Optional[str] = None
    refunded: int = 0
    refund_pending: bool = False


class EnrollmentLifecycleManager:
    """Entry point for enrollment requests.

    Owns the transaction for every public method: waitlist and order work
    done on its behalf is flushed into the same session and committed once.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier = None,
        capacity: CapacitySource = None,
        waitlist: WaitlistQueue = None,
        orders: OrderLifecycleManager = None,
        refund_calculator: RefundCalculator = None,
    ):
        self.db_session = db_session
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.capacity = capacity or DatabaseCapacitySource(db_session)
        self.waitlist = waitlist or WaitlistQueue(db_session, self.notifier)
        self.orders = orders or OrderLifecycleManager(db_session, gateway, notifier=self.notifier)
        self.orders.on_paid = self.activate_for_order
        self.orders.on_cancelled = self.cancel_for_order
        self.refund_calculator = refund_calculator or RefundCalculator()

    # ============== Creation ==============

    async def create(
        self,
        ctx: CallerContext,
        child_id: str,
        class_id: str,
        discount_code: str = None,
        apply_sibling_discount: bool = False,
        is_priority: bool = False,
        now: datetime = None,
    ) -> EnrollmentResult:
        """Enroll a child: a PENDING enrollment with a DRAFT order, or WAITLIST when full."""
        now = now or datetime.now(timezone.utc)
        if is_priority:
            ctx.ensure_admin()

        child = await self._get_child(ctx, child_id)
        class_ = await self._lock_open_class(class_id)
        await self._ensure_not_enrolled(child_id, class_id)

        if await self._free_seats(class_id, now) <= 0:
            enrollment = Enrollment(
                child_id=child_id,
                class_id=class_id,
                user_id=child.user_id,
                status=EnrollmentStatus.WAITLIST,
                base_price=class_.price,
                final_price=class_.price,
                discount_code=discount_code,
            )
            self.db_session.add(enrollment)
            await self._flush_new()
            position = await self.waitlist.join(
                class_id,
                enrollment.id,
                is_priority=is_priority,
                user_id=child.user_id,
                now=now,
            )
            self._record(enrollment, None, EnrollmentStatus.WAITLIST, ctx, note="Class full")
            await self._commit_new()
            logger.info(
                f"Class {class_id} is full; enrollment {enrollment.id} waitlisted at "
                f"position {position}"
            )
            return EnrollmentResult(enrollment=enrollment, waitlist_position=position)

        enrollment = Enrollment(
            child_id=child_id,
            class_id=class_id,
            user_id=child.user_id,
            status=EnrollmentStatus.PENDING,
            base_price=class_.price,
            discount_code=discount_code,
        )
        self.db_session.add(enrollment)
        await self._flush_new()
        order = await self._draft_order(ctx, [enrollment], discount_code, apply_sibling_discount, now)
        self._record(enrollment, None, EnrollmentStatus.PENDING, ctx)
        await self._commit_new()

        logger.info(
            f"Created pending enrollment {enrollment.id} for child {child_id} in class "
            f"{class_id} (order {order.id})"
        )
        return EnrollmentResult(enrollment=enrollment, order=order)

    async def create_order(
        self,
        ctx: CallerContext,
        line_items: Sequence[LineItemInput],
        discount_code: str = None,
        apply_sibling_discount: bool = False,
        now: datetime = None,
    ) -> EnrollmentResult:
        """Hold seats for a multi-child cart and draft one order for it.

        Unlike ``create`` a full class is a conflict here; carts do not
        waitlist.
        """
        now = now or datetime.now(timezone.utc)
        if not line_items:
            raise ValidationException("Order must contain at least one line item")

        enrollments = []
        seen = set()
        for item in line_items:
            key = (item.child_id, item.class_id)
            if key in seen:
                raise ValidationException("Duplicate child and class in order")
            seen.add(key)

            child = await self._get_child(ctx, item.child_id)
            class_ = await self._lock_open_class(item.class_id)
            await self._ensure_not_enrolled(item.child_id, item.class_id)
            if await self._free_seats(item.class_id, now) <= 0:
                raise ConflictException(f"Class {class_.name} is full")

            enrollment = Enrollment(
                child_id=item.child_id,
                class_id=item.class_id,
                user_id=child.user_id,
                status=EnrollmentStatus.PENDING,
                base_price=class_.price if item.unit_amount is None else item.unit_amount,
                discount_code=discount_code,
            )
            self.db_session.add(enrollment)
            await self._flush_new()
            self._record(enrollment, None, EnrollmentStatus.PENDING, ctx)
            enrollments.append(enrollment)

        order = await self.orders.create(
            ctx,
            line_items,
            discount_code=discount_code,
            apply_sibling_discount=apply_sibling_discount,
            owner_id=enrollments[0].user_id,
            now=now,
            commit=False,
        )
        self._allocate(order, enrollments)
        await self._commit_new()
        return EnrollmentResult(enrollment=enrollments[0], order=order)

    # ============== Order hooks ==============

    async def activate_for_order(self, order: Order, ctx: CallerContext) -> None:
        """Activate the PENDING enrollments an order just paid for (flush only)."""
        now = datetime.now(timezone.utc)
        enrollments = await self._pending_enrollments(order)
        if len(enrollments) < len(order.line_items):
            logger.warning(
                f"Order {order.id} paid for {len(order.line_items)} line item(s) but only "
                f"{len(enrollments)} pending enrollment(s) were found"
            )

        self._allocate(order, enrollments)
        for enrollment in enrollments:
            enrollment.order_id = order.id
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.activated_at = now
            self._record(
                enrollment,
                EnrollmentStatus.PENDING,
                EnrollmentStatus.ACTIVE,
                ctx,
                note=f"Order {order.id} {order.status.value}",
            )
            logger.info(f"Activated enrollment {enrollment.id} (order {order.id})")
            self.notifier.notify(
                enrollment.user_id,
                NotificationEvent.ENROLLMENT_ACTIVATED,
                {"enrollment_id": enrollment.id, "class_id": enrollment.class_id},
            )
        await self._flush()

    async def cancel_for_order(self, order: Order, ctx: CallerContext) -> None:
        """Release the seats held by a cancelled unpaid order (flush only)."""
        now = datetime.now(timezone.utc)
        vacated = []
        for item in order.line_items:
            enrollment = await Enrollment.get_pending_for_line_item(
                self.db_session, item.child_id, item.class_id
            )
            if enrollment is None:
                continue
            self._cancel(enrollment, ctx, f"Order {order.id} cancelled", now)
            vacated.append(enrollment.class_id)

        await self._flush()
        for class_id in vacated:
            await self._offer_vacated_seats(class_id, now)

    # ============== Cancellation ==============

    async def preview_cancellation(
        self, ctx: CallerContext, enrollment_id: str, now: datetime = None
    ) -> RefundBreakdown:
        """Refund the caller would get by cancelling now. No side effects."""
        now = now or datetime.now(timezone.utc)
        enrollment = await self.get(ctx, enrollment_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            return RefundBreakdown(
                refund_amount=0,
                cancellation_fee=0,
                net_refund=0,
                policy_description=f"Nothing paid for a {enrollment.status.value} enrollment",
                enrollment_id=enrollment.id,
            )
        order = await Order.get_by_id(self.db_session, enrollment.order_id) if enrollment.order_id else None
        return await self._calculate_refund(enrollment, order, now)

    async def cancel(
        self,
        ctx: CallerContext,
        enrollment_id: str,
        reason: str = None,
        now: datetime = None,
    ) -> CancellationResult:
        """Cancel an enrollment, refunding ACTIVE ones per the refund policy.

        Cancelling one child of a multi-child order only takes that child's
        line item off the order. For ACTIVE enrollments the cancellation is
        committed with the refund owed before the gateway is called, so a
        repeated request cannot refund twice. A gateway refund failure does
        not undo the cancellation; the enrollment stays REFUND_PENDING with
        the amount still owed.
        """
        now = now or datetime.now(timezone.utc)
        enrollment = await self._get_for_update(ctx, enrollment_id)
        if not enrollment.is_cancellable:
            raise ConflictException(
                f"Cannot cancel a {enrollment.status.value} enrollment"
            )

        result = CancellationResult(enrollment=enrollment)
        previous = enrollment.status
        order = None
        owed = 0

        if previous == EnrollmentStatus.WAITLIST:
            entry = await self.waitlist.get_entry(enrollment.id)
            held_offer = entry is not None and entry.claim_open(now)
            await self.waitlist.remove(enrollment.id)
            self._cancel(enrollment, ctx, reason, now)
            await self._flush()
            if held_offer:
                await self._offer_vacated_seats(enrollment.class_id, now)

        elif previous == EnrollmentStatus.PENDING:
            self._cancel(enrollment, ctx, reason, now)
            await self._flush()
            open_order = await Order.get_open_for_line_item(
                self.db_session, enrollment.user_id, enrollment.child_id, enrollment.class_id
            )
            if open_order is not None:
                open_order = await self.orders.remove_line_item(
                    ctx, open_order.id, enrollment.child_id, enrollment.class_id, commit=False
                )
                if open_order.status != OrderStatus.CANCELLED:
                    self._allocate(open_order, await self._pending_enrollments(open_order))
                    await self._flush()
            await self._offer_vacated_seats(enrollment.class_id, now)

        else:
            if enrollment.order_id:
                order = await Order.get_by_id(self.db_session, enrollment.order_id, for_update=True)
            breakdown = await self._calculate_refund(enrollment, order, now)
            result.refund = breakdown
            if order is not None and breakdown.net_refund > 0:
                owed = breakdown.net_refund
                enrollment.refund_status = RefundStatus.REFUND_PENDING
                enrollment.refund_amount_due += owed

            self._cancel(enrollment, ctx, reason, now)
            await self._flush()
            if order is not None:
                await self._stop_installments(order)
            await self._offer_vacated_seats(enrollment.class_id, now)

        await self._commit(enrollment, "cancel")

        if owed > 0:
            outcome = await self._refund(enrollment, order, owed, reason or "Enrollment cancelled")
            result.refunded = outcome.refunded
            result.refund_pending = enrollment.refund_amount_due > 0

        logger.info(
            f"Cancelled {previous.value} enrollment {enrollment.id}"
            f"{', refunded ' + str(result.refunded) + ' cents' if result.refunded else ''}"
        )
        self.notifier.notify(
            enrollment.user_id,
            NotificationEvent.ENROLLMENT_CANCELLED,
            {"enrollment_id": enrollment.id, "refunded": result.refunded},
        )
        if result.refund_pending:
            self.notifier.notify(
                enrollment.user_id,
                NotificationEvent.REFUND_PENDING,
                {"enrollment_id": enrollment.id, "amount_due": enrollment.refund_amount_due},
            )
        return result

    async def retry_pending_refund(
        self, ctx: CallerContext, enrollment_id: str
    ) -> Enrollment:
        """Re-issue a refund that failed at the gateway."""
        ctx.ensure_admin()
        enrollment = await self._get_for_update(ctx, enrollment_id)
        if (
            enrollment.refund_status != RefundStatus.REFUND_PENDING
            or enrollment.refund_amount_due <= 0
        ):
            raise ConflictException("Enrollment has no pending refund")
        order = await Order.get_by_id(self.db_session, enrollment.order_id, for_update=True)
        if order is None:
            raise NotFoundException(f"Order {enrollment.order_id} not found")

        outcome = await self._refund(
            enrollment, order, enrollment.refund_amount_due, "Pending refund retry"
        )
        if outcome.error is not None:
            logger.warning(
                f"Refund retry for enrollment {enrollment.id} still owes "
                f"{enrollment.refund_amount_due} cents"
            )
            raise outcome.error
        return enrollment

    async def list_pending_refunds(self, ctx: CallerContext) -> Sequence[Enrollment]:
        """Enrollments still owed money, oldest cancellation first."""
        ctx.ensure_admin()
        return await Enrollment.get_refund_pending(self.db_session)

    # ============== Transfers ==============

    async def transfer(
        self,
        ctx: CallerContext,
        enrollment_id: str,
        new_class_id: str,
        now: datetime = None,
    ) -> TransferResult:
        """Move an ACTIVE enrollment to another class, settling the price difference.

        The enrollment keeps its id, order link, discount and history; a
        positive difference is charged to the order's payment method, a
        negative one refunded. A charge whose move then loses a concurrent
        update is refunded before the conflict is raised. A refund is only
        issued after the move is committed.
        """
        now = now or datetime.now(timezone.utc)
        enrollment = await self._get_for_update(ctx, enrollment_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise ConflictException(
                f"Only active enrollments can be transferred, not {enrollment.status.value}"
            )
        if enrollment.class_id == new_class_id:
            raise ValidationException("Enrollment is already in this class")

        new_class = await self._lock_open_class(new_class_id)
        await self._ensure_not_enrolled(enrollment.child_id, new_class_id)
        if await self._free_seats(new_class_id, now) <= 0:
            raise ConflictException(f"Class {new_class.name} is full")

        taxable = max(0, new_class.price - enrollment.discount_amount)
        new_final = taxable + percent_of(taxable, self.orders.tax_rate)
        delta = new_final - enrollment.final_price

        order = None
        if enrollment.order_id:
            order = await Order.get_by_id(self.db_session, enrollment.order_id, for_update=True)

        old_class_id = enrollment.class_id
        result = TransferResult(
            enrollment=enrollment, from_class_id=old_class_id, price_delta=delta
        )
        if delta > 0:
            if order is None or not order.payment_method_ref:
                raise ValidationException("No payment method on file for the price difference")
            order_id = order.id
            charge = await self.gateway.charge(
                delta,
                order.payment_method_ref,
                idempotency_key=f"transfer:{enrollment_id}:{new_class_id}:{enrollment.version}",
                metadata={"enrollment_id": enrollment_id, "order_id": order_id},
            )
            if charge.status == GatewayStatus.FAILED:
                raise PaymentProcessingException(
                    charge.failure_reason or "Transfer charge failed", retryable=False
                )
            try:
                await self.orders.record_payment(
                    order, charge.charge_id, delta, note=f"Transfer to class {new_class_id}"
                )
                await self._move(enrollment, new_class, new_final, delta, ctx, now)
                await self._commit(enrollment, "transfer")
            except ConflictException:
                await self._reverse_charge(order_id, enrollment_id, charge.charge_id, delta)
                raise
            result.charge_id = charge.charge_id

        elif delta < 0 and order is not None:
            enrollment.refund_status = RefundStatus.REFUND_PENDING
            enrollment.refund_amount_due += -delta
            await self._move(enrollment, new_class, new_final, delta, ctx, now)
            await self._commit(enrollment, "transfer")

            outcome = await self._refund(
                enrollment, order, -delta, f"Transfer to class {new_class_id}"
            )
            result.refunded = outcome.refunded
            result.refund_pending = enrollment.refund_amount_due > 0

        else:
            await self._move(enrollment, new_class, new_final, delta, ctx, now)
            await self._commit(enrollment, "transfer")

        logger.info(
            f"Transferred enrollment {enrollment_id} from class {old_class_id} to "
            f"{new_class_id} (delta {delta} cents)"
        )
        self.notifier.notify(
            enrollment.user_id,
            NotificationEvent.ENROLLMENT_TRANSFERRED,
            {
                "enrollment_id": enrollment_id,
                "from_class_id": old_class_id,
                "to_class_id": new_class_id,
                "price_delta": delta,
            },
        )
        return result

    # ============== Waitlist ==============

    async def claim_waitlist(
        self,
        ctx: CallerContext,
        enrollment_id: str,
        discount_code: str = None,
        now: datetime = None,
    ) -> EnrollmentResult:
        """Take an offered seat: WAITLIST -> PENDING with a DRAFT order to pay."""
        now = now or datetime.now(timezone.utc)
        enrollment = await self._get_for_update(ctx, enrollment_id)
        class_ = await self._lock_open_class(enrollment.class_id)

        enrollment = await self.waitlist.claim(enrollment_id, now=now)
        enrollment.base_price = class_.price
        if discount_code:
            enrollment.discount_code = discount_code
        order = await self._draft_order(ctx, [enrollment], enrollment.discount_code, False, now)
        self._record(enrollment, EnrollmentStatus.WAITLIST, EnrollmentStatus.PENDING, ctx)
        await self._commit(enrollment, "claim")

        logger.info(f"Enrollment {enrollment.id} claimed its seat (order {order.id})")
        return EnrollmentResult(enrollment=enrollment, order=order)

    async def promote_waitlist(
        self, ctx: CallerContext, enrollment_id: str
    ) -> Enrollment:
        """Admin path: WAITLIST -> ACTIVE without notification or payment."""
        ctx.ensure_admin()
        enrollment = await self.waitlist.promote(ctx, enrollment_id)
        self._record(
            enrollment,
            EnrollmentStatus.WAITLIST,
            EnrollmentStatus.ACTIVE,
            ctx,
            note="Promoted by admin",
        )
        await self._commit(enrollment, "promote")
        return enrollment

    async def process_expired_claims(self, now: datetime = None) -> int:
        """Offer seats left behind by lapsed claims to the next waiting entries.

        Expired entries stay queued so an admin can still promote them.
        """
        now = now or datetime.now(timezone.utc)
        class_ids = []
        for entry in await self.waitlist.expired_claims(now):
            if entry.class_id not in class_ids:
                class_ids.append(entry.class_id)

        notified = 0
        for class_id in class_ids:
            notified += len(await self._offer_vacated_seats(class_id, now))
        await commit_or_conflict(self.db_session)

        logger.info(
            f"Checked {len(class_ids)} class(es) with expired claims, notified {notified}"
        )
        return notified

    # ============== Queries ==============

    async def get(self, ctx: CallerContext, enrollment_id: str) -> Enrollment:
        enrollment = await Enrollment.get_by_id(self.db_session, enrollment_id)
        if not enrollment:
            raise NotFoundException(f"Enrollment {enrollment_id} not found")
        ctx.ensure_owner(enrollment.user_id)
        return enrollment

    async def list_for_user(
        self, ctx: CallerContext, user_id: str = None, status: EnrollmentStatus = None
    ) -> Sequence[Enrollment]:
        user_id = user_id or ctx.caller_id
        ctx.ensure_owner(user_id)
        return await Enrollment.get_by_user_id(self.db_session, user_id, status=status)

    async def history(
        self, ctx: CallerContext, enrollment_id: str
    ) -> Sequence[EnrollmentHistory]:
        await self.get(ctx, enrollment_id)
        return await EnrollmentHistory.get_for_enrollment(self.db_session, enrollment_id)

    # ============== Helpers ==============

    async def _calculate_refund(
        self, enrollment: Enrollment, order: Optional[Order], now: datetime
    ) -> RefundBreakdown:
        class_ = await Class.get_by_id(self.db_session, enrollment.class_id)
        if class_ is None:
            raise NotFoundException(f"Class {enrollment.class_id} not found")
        attended = await Attendance.count_attended(
            self.db_session, enrollment.id, enrollment.class_id
        )
        return self.refund_calculator.calculate(
            enrollment,
            self._paid_share(enrollment, order),
            attended,
            class_.session_count,
            class_.start_date,
            now,
        )

    @staticmethod
    def _paid_share(enrollment: Enrollment, order: Optional[Order]) -> int:
        """What this enrollment has actually paid, never more than the order can refund."""
        if order is None or order.status not in PAID_STATUSES or order.total <= 0:
            return 0
        share = enrollment.final_price
        if order.status == OrderStatus.PARTIALLY_PAID:
            paid = min(order.amount_paid, order.total)
            share = round_cents(Decimal(enrollment.final_price) * paid / order.total)
        return max(0, min(share, order.refundable_amount))

    @staticmethod
    def _allocate(order: Order, enrollments: List[Enrollment]) -> None:
        """Split the order's total and discount across its enrollments by list price.

        Remainders go to the last enrollment so the shares sum exactly.
        """
        if not enrollments:
            return
        list_total = sum(e.base_price for e in enrollments)
        price_left = order.total
        discount_left = order.discount_total
        for i, enrollment in enumerate(enrollments):
            if i == len(enrollments) - 1:
                final_price, discount = price_left, discount_left
            elif list_total > 0:
                final_price = order.total * enrollment.base_price // list_total
                discount = order.discount_total * enrollment.base_price // list_total
            else:
                final_price, discount = 0, 0
            enrollment.final_price = final_price
            enrollment.discount_amount = discount
            price_left -= final_price
            discount_left -= discount

    async def _draft_order(
        self,
        ctx: CallerContext,
        enrollments: List[Enrollment],
        discount_code: Optional[str],
        apply_sibling_discount: bool,
        now: datetime,
    ) -> Order:
        order = await self.orders.create(
            ctx,
            [LineItemInput(e.class_id, e.child_id, e.base_price) for e in enrollments],
            discount_code=discount_code,
            apply_sibling_discount=apply_sibling_discount,
            owner_id=enrollments[0].user_id,
            now=now,
            commit=False,
        )
        self._allocate(order, enrollments)
        return order

    async def _pending_enrollments(self, order: Order) -> List[Enrollment]:
        enrollments = []
        for item in order.line_items:
            enrollment = await Enrollment.get_pending_for_line_item(
                self.db_session, item.child_id, item.class_id
            )
            if enrollment is not None:
                enrollments.append(enrollment)
        return enrollments

    async def _move(
        self,
        enrollment: Enrollment,
        new_class: Class,
        new_final: int,
        delta: int,
        ctx: CallerContext,
        now: datetime,
    ) -> None:
        old_class_id = enrollment.class_id
        enrollment.class_id = new_class.id
        enrollment.base_price = new_class.price
        enrollment.final_price = new_final
        self._record(
            enrollment,
            EnrollmentStatus.ACTIVE,
            EnrollmentStatus.ACTIVE,
            ctx,
            from_class_id=old_class_id,
            note=f"Transferred, price difference {delta} cents",
        )
        await self._flush()
        await self._offer_vacated_seats(old_class_id, now)

    async def _refund(
        self, enrollment: Enrollment, order: Order, amount: int, reason: str
    ) -> RefundOutcome:
        """Refund at the gateway, then record it on the order and the enrollment.

        The enrollment must already carry ``amount`` in its committed
        ``refund_amount_due``; whatever the gateway does not return stays due.
        """
        enrollment_id, order_id = enrollment.id, order.id
        outcome = await self.orders.refund_at_gateway(order, amount)

        async def record():
            current_order = await Order.get_by_id(self.db_session, order_id, for_update=True)
            current = await Enrollment.get_by_id(self.db_session, enrollment_id, for_update=True)
            await self.orders.record_refund(current_order, outcome, reason)
            self._settle_refund(current, outcome)
            await self._flush()

        await commit_with_retry(
            self.db_session, record, f"refund for enrollment {enrollment_id}"
        )
        return outcome

    async def _reverse_charge(
        self, order_id: str, enrollment_id: str, charge_id: str, amount: int
    ) -> None:
        """Give back a transfer charge whose move could not be saved."""
        try:
            await self.gateway.refund(charge_id, amount)
        except PaymentProcessingException:
            logger.error(
                f"Could not reverse transfer charge {charge_id} for enrollment "
                f"{enrollment_id}; recording it on order {order_id} for a manual refund"
            )

            async def record():
                order = await Order.get_by_id(self.db_session, order_id, for_update=True)
                await self.orders.record_payment(
                    order, charge_id, amount, note="Transfer not applied; refund owed"
                )

            await commit_with_retry(
                self.db_session, record, f"unapplied transfer charge {charge_id}"
            )
            return
        logger.warning(
            f"Reversed transfer charge {charge_id} of {amount} cents: enrollment "
            f"{enrollment_id} was modified concurrently"
        )

    @staticmethod
    def _settle_refund(enrollment: Enrollment, outcome: RefundOutcome) -> None:
        enrollment.refunded_amount += outcome.refunded
        enrollment.refund_amount_due = max(0, enrollment.refund_amount_due - outcome.refunded)
        if enrollment.refund_amount_due > 0:
            enrollment.refund_status = RefundStatus.REFUND_PENDING
            logger.warning(
                f"Refund for enrollment {enrollment.id} pending: "
                f"{enrollment.refund_amount_due} cents not returned"
            )
        else:
            enrollment.refund_status = RefundStatus.REFUNDED

    def _cancel(
        self, enrollment: Enrollment, ctx: CallerContext, reason: Optional[str], now: datetime
    ) -> None:
        previous = enrollment.status
        enrollment.status = EnrollmentStatus.CANCELLED
        enrollment.cancelled_at = now
        enrollment.cancellation_reason = reason
        self._record(enrollment, previous, EnrollmentStatus.CANCELLED, ctx, note=reason)

    async def _stop_installments(self, order: Order) -> None:
        """Cancel the order's installment plan once none of its enrollments is active."""
        plan = await InstallmentPlan.get_by_order_id(self.db_session, order.id)
        if plan is None or plan.status != InstallmentPlanStatus.ACTIVE:
            return
        remaining = [
            e for e in await Enrollment.get_by_order_id(self.db_session, order.id)
            if e.status == EnrollmentStatus.ACTIVE
        ]
        if remaining:
            return
        plan.status = InstallmentPlanStatus.CANCELLED
        plan.cancelled_at = datetime.now(timezone.utc)
        logger.info(f"Cancelled installment plan {plan.id}: no active enrollments left")

    async def _offer_vacated_seats(self, class_id: str, now: datetime) -> List[str]:
        """Notify waiting entries while seats exceed the offers already open."""
        notified = []
        while await self._free_seats(class_id, now) > 0:
            enrollment_id = await self.waitlist.notify_next(class_id, now=now)
            if enrollment_id is None:
                break
            notified.append(enrollment_id)
        return notified

    async def _free_seats(self, class_id: str, now: datetime) -> int:
        """Available spots not already promised to a notified waitlist entry."""
        spots = await self.capacity.get_available_spots(class_id)
        return spots - await self.waitlist.open_claims(class_id, now)

    async def _get_child(self, ctx: CallerContext, child_id: str) -> Child:
        child = await Child.get_by_id(self.db_session, child_id)
        if not child:
            raise NotFoundException(f"Child {child_id} not found")
        ctx.ensure_owner(child.user_id)
        return child

    async def _lock_open_class(self, class_id: str) -> Class:
        class_ = await Class.get_by_id(self.db_session, class_id, for_update=True)
        if not class_:
            raise NotFoundException(f"Class {class_id} not found")
        if not class_.is_active:
            raise ValidationException(f"Class {class_.name} is not open for enrollment")
        return class_

    async def _ensure_not_enrolled(self, child_id: str, class_id: str) -> None:
        existing = await Enrollment.get_open_by_child_and_class(
            self.db_session, child_id, class_id
        )
        if existing:
            raise ConflictException(
                f"Child already has a {existing.status.value} enrollment in this class"
            )

    async def _get_for_update(self, ctx: CallerContext, enrollment_id: str) -> Enrollment:
        enrollment = await Enrollment.get_by_id(self.db_session, enrollment_id, for_update=True)
        if not enrollment:
            raise NotFoundException(f"Enrollment {enrollment_id} not found")
        ctx.ensure_owner(enrollment.user_id)
        return enrollment

    def _record(
        self,
        enrollment: Enrollment,
        from_status: Optional[EnrollmentStatus],
        to_status: EnrollmentStatus,
        ctx: CallerContext,
        from_class_id: str = None,
        note: str = None,
    ) -> None:
        self.db_session.add(
            EnrollmentHistory(
                enrollment_id=enrollment.id,
                from_status=from_status,
                to_status=to_status,
                from_class_id=from_class_id,
                to_class_id=enrollment.class_id,
                actor_id=ctx.caller_id,
                note=note,
            )
        )

    async def _flush(self) -> None:
        await flush_or_conflict(self.db_session, ENROLLMENT_CONFLICT_MESSAGE)

    async def _flush_new(self) -> None:
        await flush_or_conflict(self.db_session, ALREADY_ENROLLED_MESSAGE)

    async def _commit_new(self) -> None:
        await commit_or_conflict(self.db_session, ALREADY_ENROLLED_MESSAGE)

    async def _commit(self, enrollment: Enrollment, action: str) -> None:
        enrollment_id = enrollment.id
        try:
            await commit_or_conflict(self.db_session, ENROLLMENT_CONFLICT_MESSAGE)
        except ConflictException:
            logger.info(f"Lost concurrent update on enrollment {enrollment_id} during {action}")
            raise
