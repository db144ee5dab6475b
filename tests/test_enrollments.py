"""Tests for the enrollment lifecycle."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.models.attendance import Attendance, AttendanceStatus
from app.models.discount import DiscountType
from app.models.enrollment import Enrollment, EnrollmentStatus, RefundStatus
from app.models.order import Order, OrderStatus, OrderTransaction, TransactionKind
from app.models.payment import InstallmentPlan, InstallmentPlanStatus
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.notifier import NotificationEvent
from app.services.order_service import LineItemInput, PaymentPlan
from core.exceptions.base import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)


async def record_attendance(db_session, enrollment, class_, present: int, start: date):
    for i in range(present):
        db_session.add(
            Attendance(
                enrollment_id=enrollment.id,
                class_id=class_.id,
                date=start + timedelta(days=7 * i),
                status=AttendanceStatus.PRESENT,
            )
        )
    await db_session.commit()


class TestEnrollmentCreation:
    """Tests for creating enrollments."""

    async def test_create_pending_with_draft_order(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class(price=12000)
        child = await create_child()

        result = await manager.create(parent_ctx, child.id, class_.id)

        assert result.enrollment.status == EnrollmentStatus.PENDING
        assert result.enrollment.base_price == 12000
        assert result.enrollment.final_price == 12000
        assert result.enrollment.user_id == parent_ctx.caller_id
        assert result.order.status == OrderStatus.DRAFT
        assert result.order.total == 12000
        assert [(i.child_id, i.class_id) for i in result.order.line_items] == [
            (child.id, class_.id)
        ]
        assert result.waitlist_position is None

    async def test_duplicate_enrollment(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        await manager.create(parent_ctx, child.id, class_.id)

        with pytest.raises(ConflictException):
            await manager.create(parent_ctx, child.id, class_.id)

    async def test_reenroll_after_cancellation(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        first = await manager.create(parent_ctx, child.id, class_.id)
        await manager.cancel(parent_ctx, first.enrollment.id)

        second = await manager.create(parent_ctx, child.id, class_.id)
        assert second.enrollment.id != first.enrollment.id
        assert second.enrollment.status == EnrollmentStatus.PENDING

    async def test_inactive_class(self, manager, parent_ctx, create_class, create_child):
        class_ = await create_class(is_active=False)
        child = await create_child()
        with pytest.raises(ValidationException):
            await manager.create(parent_ctx, child.id, class_.id)

    async def test_unknown_class(self, manager, parent_ctx, create_child):
        child = await create_child()
        with pytest.raises(NotFoundException):
            await manager.create(parent_ctx, child.id, "missing-class")

    async def test_other_parents_child(
        self, manager, other_parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        with pytest.raises(ForbiddenException):
            await manager.create(other_parent_ctx, child.id, class_.id)

    async def test_pending_enrollment_holds_a_seat(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class(capacity=1)
        await manager.create(parent_ctx, (await create_child("Ada")).id, class_.id)

        result = await manager.create(parent_ctx, (await create_child("Ben")).id, class_.id)
        assert result.enrollment.status == EnrollmentStatus.WAITLIST

    async def test_history_records_creation(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, class_.id)

        history = await manager.history(parent_ctx, result.enrollment.id)
        assert [(h.from_status, h.to_status) for h in history] == [
            (None, EnrollmentStatus.PENDING)
        ]
        assert history[0].actor_id == parent_ctx.caller_id

    async def test_simultaneous_enrollment_of_same_child(
        self, manager, parent_ctx, create_class, create_child, other_session, gateway,
        notifier, monkeypatch,
    ):
        class_ = await create_class()
        child = await create_child()
        await manager.create(parent_ctx, child.id, class_.id)

        # The second request checked for an open enrollment before the first committed
        async def no_open_enrollment(*args, **kwargs):
            return None

        monkeypatch.setattr(Enrollment, "get_open_by_child_and_class", no_open_enrollment)
        rival = EnrollmentLifecycleManager(other_session, gateway, notifier=notifier)
        with pytest.raises(ConflictException):
            await rival.create(parent_ctx, child.id, class_.id)
        monkeypatch.undo()

        enrollments = await manager.list_for_user(parent_ctx)
        assert len([e for e in enrollments if e.status != EnrollmentStatus.CANCELLED]) == 1


class TestMultiChildOrders:
    """Tests for carts covering several children."""

    async def test_payment_activates_every_enrollment(
        self, manager, parent_ctx, create_class, create_child
    ):
        soccer = await create_class(name="Soccer", price=10000)
        art = await create_class(name="Art", price=5000)
        ada = await create_child("Ada")
        ben = await create_child("Ben")

        result = await manager.create_order(
            parent_ctx,
            [LineItemInput(soccer.id, ada.id), LineItemInput(art.id, ben.id)],
        )
        assert result.order.total == 15000
        order = await manager.orders.checkout(parent_ctx, result.order.id, "pm_card_visa")
        await manager.orders.confirm(parent_ctx, order.id, order.authorization_token, "succeeded")

        enrollments = await manager.list_for_user(parent_ctx)
        assert sorted(e.final_price for e in enrollments) == [5000, 10000]
        assert all(e.status == EnrollmentStatus.ACTIVE for e in enrollments)
        assert all(e.order_id == order.id for e in enrollments)

    async def test_discount_split_across_enrollments(
        self, manager, parent_ctx, create_class, create_child, create_discount_code
    ):
        soccer = await create_class(name="Soccer", price=10000)
        art = await create_class(name="Art", price=5000)
        ada = await create_child("Ada")
        ben = await create_child("Ben")
        await create_discount_code()

        await manager.create_order(
            parent_ctx,
            [LineItemInput(soccer.id, ada.id), LineItemInput(art.id, ben.id)],
            discount_code="SAVE20",
        )

        enrollments = await manager.list_for_user(parent_ctx)
        assert sum(e.final_price for e in enrollments) == 12000
        assert sum(e.discount_amount for e in enrollments) == 3000

    async def test_full_class_rejects_cart(
        self, manager, parent_ctx, create_class, create_child
    ):
        open_class = await create_class(name="Soccer")
        full_class = await create_class(name="Art", capacity=0)
        ada = await create_child("Ada")
        ben = await create_child("Ben")

        with pytest.raises(ConflictException):
            await manager.create_order(
                parent_ctx,
                [LineItemInput(open_class.id, ada.id), LineItemInput(full_class.id, ben.id)],
            )

    async def test_duplicate_cart_items(self, manager, parent_ctx, create_class, create_child):
        class_ = await create_class()
        child = await create_child()
        with pytest.raises(ValidationException):
            await manager.create_order(
                parent_ctx,
                [LineItemInput(class_.id, child.id), LineItemInput(class_.id, child.id)],
            )

    async def test_empty_cart(self, manager, parent_ctx):
        with pytest.raises(ValidationException):
            await manager.create_order(parent_ctx, [])

    async def test_cancelling_one_child_keeps_the_rest_of_the_order(
        self, manager, parent_ctx, create_class, create_child, create_discount_code
    ):
        soccer = await create_class(name="Soccer", price=10000)
        art = await create_class(name="Art", price=5000)
        ada = await create_child("Ada")
        ben = await create_child("Ben")
        await create_discount_code(
            code="TAKE30",
            discount_type=DiscountType.FIXED_AMOUNT,
            discount_value=Decimal("3000"),
        )
        result = await manager.create_order(
            parent_ctx,
            [LineItemInput(soccer.id, ada.id), LineItemInput(art.id, ben.id)],
            discount_code="TAKE30",
        )
        assert result.order.total == 12000
        assert result.enrollment.child_id == ada.id

        cancelled = await manager.cancel(parent_ctx, result.enrollment.id)

        assert cancelled.enrollment.status == EnrollmentStatus.CANCELLED
        remaining = await manager.list_for_user(parent_ctx, status=EnrollmentStatus.PENDING)
        assert [e.child_id for e in remaining] == [ben.id]
        assert remaining[0].final_price == 2000
        assert remaining[0].discount_amount == 3000
        order = await manager.orders.get(parent_ctx, result.order.id)
        assert order.status == OrderStatus.DRAFT
        assert [(i.child_id, i.class_id) for i in order.line_items] == [(ben.id, art.id)]
        assert order.total == 2000

    async def test_cancelling_one_child_voids_authorization(
        self, manager, parent_ctx, create_class, create_child, gateway
    ):
        soccer = await create_class(name="Soccer", price=10000)
        art = await create_class(name="Art", price=5000)
        ada = await create_child("Ada")
        ben = await create_child("Ben")
        result = await manager.create_order(
            parent_ctx,
            [LineItemInput(soccer.id, ada.id), LineItemInput(art.id, ben.id)],
        )
        order = await manager.orders.checkout(parent_ctx, result.order.id, "pm_card_visa")
        first_token = order.authorization_token

        await manager.cancel(parent_ctx, result.enrollment.id)

        assert gateway.voided == [first_token]
        order = await manager.orders.get(parent_ctx, result.order.id)
        assert order.status == OrderStatus.DRAFT
        assert order.authorization_token is None
        assert order.total == 5000

        order = await manager.orders.checkout(parent_ctx, order.id, "pm_card_visa")
        assert gateway.authorizations[order.authorization_token] == 5000
        await manager.orders.confirm(parent_ctx, order.id, order.authorization_token, "succeeded")

        active = await manager.list_for_user(parent_ctx, status=EnrollmentStatus.ACTIVE)
        assert [e.child_id for e in active] == [ben.id]


class TestEnrollmentCancellation:
    """Tests for cancellation and refunds."""

    async def test_cancel_pending_cancels_order(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, class_.id)

        cancelled = await manager.cancel(parent_ctx, result.enrollment.id, reason="Schedule")

        assert cancelled.enrollment.status == EnrollmentStatus.CANCELLED
        assert cancelled.enrollment.cancellation_reason == "Schedule"
        assert cancelled.refund is None
        order = await manager.orders.get(parent_ctx, result.order.id)
        assert order.status == OrderStatus.CANCELLED

    async def test_cancel_active_before_start_refunds_in_full(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway
    ):
        class_ = await create_class()
        child = await create_child()
        enrollment, order = await enroll_and_pay(parent_ctx, child, class_)

        result = await manager.cancel(parent_ctx, enrollment.id)

        assert result.refund.net_refund == 10000
        assert result.refunded == 10000
        assert result.refund_pending is False
        assert result.enrollment.status == EnrollmentStatus.CANCELLED
        assert result.enrollment.refund_status == RefundStatus.REFUNDED
        assert gateway.refunds == [(order.authorization_token, 10000)]
        order = await manager.orders.get(parent_ctx, order.id)
        assert order.status == OrderStatus.REFUNDED

    async def test_cancel_after_all_sessions_attended(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway,
        db_session,
    ):
        start = date.today() - timedelta(days=70)
        class_ = await create_class(start_date=start, session_count=10)
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, class_)
        await record_attendance(db_session, enrollment, class_, 10, start)

        result = await manager.cancel(parent_ctx, enrollment.id)

        assert result.refund.net_refund == 0
        assert result.refunded == 0
        assert result.enrollment.status == EnrollmentStatus.CANCELLED
        assert result.enrollment.refund_status == RefundStatus.NONE
        assert gateway.refunds == []

    async def test_cancel_after_start_prorates(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, db_session
    ):
        start = date.today() - timedelta(days=30)
        class_ = await create_class(start_date=start, session_count=10)
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, class_)
        await record_attendance(db_session, enrollment, class_, 4, start)

        result = await manager.cancel(parent_ctx, enrollment.id)

        assert result.refund.net_refund == 6000
        assert result.refunded == 6000

    async def test_refund_failure_leaves_refund_pending(
        self, manager, parent_ctx, admin_ctx, create_class, create_child, enroll_and_pay,
        gateway, notifier,
    ):
        class_ = await create_class()
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, class_)
        gateway.refund_error = PaymentProcessingException("Gateway timeout", retryable=True)

        result = await manager.cancel(parent_ctx, enrollment.id)

        assert result.enrollment.status == EnrollmentStatus.CANCELLED
        assert result.refund_pending is True
        assert result.enrollment.refund_status == RefundStatus.REFUND_PENDING
        assert result.enrollment.refund_amount_due == 10000
        assert len(notifier.events(NotificationEvent.REFUND_PENDING)) == 1

        with pytest.raises(ForbiddenException):
            await manager.retry_pending_refund(parent_ctx, enrollment.id)

        gateway.refund_error = None
        retried = await manager.retry_pending_refund(admin_ctx, enrollment.id)

        assert retried.refund_status == RefundStatus.REFUNDED
        assert retried.refund_amount_due == 0
        assert retried.refunded_amount == 10000

    async def test_cancel_twice(self, manager, parent_ctx, create_class, create_child):
        class_ = await create_class()
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, class_.id)
        await manager.cancel(parent_ctx, result.enrollment.id)

        with pytest.raises(ConflictException):
            await manager.cancel(parent_ctx, result.enrollment.id)

    async def test_cancellation_notifies_waitlist(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, notifier
    ):
        class_ = await create_class(capacity=1)
        enrollment, _ = await enroll_and_pay(parent_ctx, await create_child("Ada"), class_)
        waiting = await manager.create(parent_ctx, (await create_child("Ben")).id, class_.id)

        await manager.cancel(parent_ctx, enrollment.id)

        sent = notifier.events(NotificationEvent.WAITLIST_SPOT_AVAILABLE)
        assert [payload["enrollment_id"] for _, _, payload in sent] == [waiting.enrollment.id]

    async def test_cancel_installment_enrollment_stops_plan(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, db_session
    ):
        class_ = await create_class(price=1000)
        child = await create_child()
        enrollment, order = await enroll_and_pay(
            parent_ctx, child, class_, plan=PaymentPlan.installments(3, "monthly")
        )

        result = await manager.cancel(parent_ctx, enrollment.id)

        # Only the first installment was paid
        assert result.refunded == 334
        plan = await InstallmentPlan.get_by_order_id(db_session, order.id)
        assert plan.status == InstallmentPlanStatus.CANCELLED

    async def test_preview_has_no_side_effects(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway
    ):
        class_ = await create_class()
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, class_)

        breakdown = await manager.preview_cancellation(parent_ctx, enrollment.id)

        assert breakdown.net_refund == 10000
        assert gateway.refunds == []
        enrollment = await manager.get(parent_ctx, enrollment.id)
        assert enrollment.status == EnrollmentStatus.ACTIVE

    async def test_preview_for_unpaid_enrollment(
        self, manager, parent_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, class_.id)

        breakdown = await manager.preview_cancellation(parent_ctx, result.enrollment.id)

        assert breakdown.refund_amount == 0
        assert breakdown.cancellation_fee == 0
        assert breakdown.net_refund == 0

    async def test_refund_recorded_when_order_changes_concurrently(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway,
        db_session, other_session,
    ):
        class_ = await create_class()
        child = await create_child()
        enrollment, order = await enroll_and_pay(parent_ctx, child, class_)
        order_id, token = order.id, order.authorization_token
        original_refund = gateway.refund

        async def refund_during_card_update(reference, amount):
            refund_id = await original_refund(reference, amount)
            current = await Order.get_by_id(other_session, order_id)
            current.payment_method_ref = "pm_card_mastercard"
            await other_session.commit()
            return refund_id

        gateway.refund = refund_during_card_update

        result = await manager.cancel(parent_ctx, enrollment.id)

        assert result.refunded == 10000
        assert result.refund_pending is False
        assert result.enrollment.refund_status == RefundStatus.REFUNDED
        assert gateway.refunds == [(token, 10000)]
        order = await Order.get_by_id(db_session, order_id)
        assert order.status == OrderStatus.REFUNDED
        assert order.amount_refunded == 10000
        assert order.payment_method_ref == "pm_card_mastercard"

    async def test_admin_lists_refunds_still_owed(
        self, manager, parent_ctx, admin_ctx, create_class, create_child, enroll_and_pay,
        gateway,
    ):
        class_ = await create_class()
        refunded, _ = await enroll_and_pay(parent_ctx, await create_child("Ada"), class_)
        owed, _ = await enroll_and_pay(parent_ctx, await create_child("Ben"), class_)
        await manager.cancel(parent_ctx, refunded.id)
        gateway.refund_error = PaymentProcessingException("Gateway timeout", retryable=True)
        await manager.cancel(parent_ctx, owed.id)

        pending = await manager.list_pending_refunds(admin_ctx)

        assert [(e.id, e.refund_amount_due) for e in pending] == [(owed.id, 10000)]
        with pytest.raises(ForbiddenException):
            await manager.list_pending_refunds(parent_ctx)


class TestEnrollmentTransfer:
    """Tests for moving an active enrollment to another class."""

    async def test_transfer_to_pricier_class_charges_difference(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway
    ):
        source = await create_class(name="Soccer", price=10000)
        target = await create_class(name="Swim", price=12000)
        child = await create_child()
        enrollment, order = await enroll_and_pay(parent_ctx, child, source)

        result = await manager.transfer(parent_ctx, enrollment.id, target.id)

        assert result.price_delta == 2000
        assert result.from_class_id == source.id
        assert result.enrollment.id == enrollment.id
        assert result.enrollment.class_id == target.id
        assert result.enrollment.final_price == 12000
        assert [c["amount"] for c in gateway.charges] == [2000]
        assert gateway.charges[0]["payment_method_ref"] == "pm_card_visa"
        order = await manager.orders.get(parent_ctx, order.id)
        assert order.amount_paid == 12000

        history = await manager.history(parent_ctx, enrollment.id)
        transfers = [h for h in history if h.from_class_id is not None]
        assert len(transfers) == 1
        assert transfers[0].from_class_id == source.id
        assert transfers[0].to_class_id == target.id

    async def test_transfer_to_cheaper_class_refunds_difference(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway
    ):
        source = await create_class(name="Soccer", price=10000)
        target = await create_class(name="Chess", price=7000)
        child = await create_child()
        enrollment, order = await enroll_and_pay(parent_ctx, child, source)

        result = await manager.transfer(parent_ctx, enrollment.id, target.id)

        assert result.price_delta == -3000
        assert result.refunded == 3000
        assert gateway.refunds == [(order.authorization_token, 3000)]
        assert gateway.charges == []

    async def test_transfer_to_full_class(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay
    ):
        source = await create_class(name="Soccer")
        target = await create_class(name="Swim", capacity=0)
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, source)

        with pytest.raises(ConflictException):
            await manager.transfer(parent_ctx, enrollment.id, target.id)

    async def test_transfer_frees_seat_for_waitlist(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, notifier
    ):
        source = await create_class(name="Soccer", capacity=1)
        target = await create_class(name="Swim")
        enrollment, _ = await enroll_and_pay(parent_ctx, await create_child("Ada"), source)
        waiting = await manager.create(parent_ctx, (await create_child("Ben")).id, source.id)

        await manager.transfer(parent_ctx, enrollment.id, target.id)

        sent = notifier.events(NotificationEvent.WAITLIST_SPOT_AVAILABLE)
        assert [payload["enrollment_id"] for _, _, payload in sent] == [waiting.enrollment.id]

    async def test_only_active_enrollments_transfer(
        self, manager, parent_ctx, create_class, create_child
    ):
        source = await create_class(name="Soccer")
        target = await create_class(name="Swim")
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, source.id)

        with pytest.raises(ConflictException):
            await manager.transfer(parent_ctx, result.enrollment.id, target.id)

    async def test_transfer_to_same_class(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay
    ):
        class_ = await create_class()
        child = await create_child()
        enrollment, _ = await enroll_and_pay(parent_ctx, child, class_)

        with pytest.raises(ValidationException):
            await manager.transfer(parent_ctx, enrollment.id, class_.id)

    async def test_charge_reversed_when_move_loses_concurrent_update(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay, gateway,
        db_session, other_session,
    ):
        source = await create_class(name="Soccer", price=5000)
        target = await create_class(name="Swim", price=10000)
        child = await create_child()
        enrollment, order = await enroll_and_pay(parent_ctx, child, source)
        source_id, target_id = source.id, target.id
        enrollment_id, order_id, token = enrollment.id, order.id, order.authorization_token
        charged = []
        original_charge = gateway.charge

        async def charge_during_edit(amount, payment_method_ref, **kwargs):
            result = await original_charge(amount, payment_method_ref, **kwargs)
            charged.append(result.charge_id)
            current = await Enrollment.get_by_id(other_session, enrollment_id)
            current.notes = "Prefers mornings"
            await other_session.commit()
            return result

        gateway.charge = charge_during_edit

        with pytest.raises(ConflictException):
            await manager.transfer(parent_ctx, enrollment_id, target_id)

        assert gateway.refunds == [(charged[0], 5000)]
        transactions = await OrderTransaction.get_for_order(db_session, order_id)
        assert [(t.kind, t.reference, t.amount) for t in transactions] == [
            (TransactionKind.PAYMENT, token, 5000)
        ]
        current = await Enrollment.get_by_id(db_session, enrollment_id)
        assert current.class_id == source_id
        assert current.notes == "Prefers mornings"


class TestEnrollmentQueries:
    """Tests for reading enrollments."""

    async def test_list_filters_by_status(
        self, manager, parent_ctx, create_class, create_child, enroll_and_pay
    ):
        class_ = await create_class()
        await enroll_and_pay(parent_ctx, await create_child("Ada"), class_)
        await manager.create(parent_ctx, (await create_child("Ben")).id, class_.id)

        active = await manager.list_for_user(parent_ctx, status=EnrollmentStatus.ACTIVE)
        everything = await manager.list_for_user(parent_ctx)

        assert len(active) == 1
        assert len(everything) == 2

    async def test_other_parent_cannot_read(
        self, manager, parent_ctx, other_parent_ctx, admin_ctx, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        result = await manager.create(parent_ctx, child.id, class_.id)

        with pytest.raises(ForbiddenException):
            await manager.get(other_parent_ctx, result.enrollment.id)
        enrollment = await manager.get(admin_ctx, result.enrollment.id)
        assert enrollment.id == result.enrollment.id
