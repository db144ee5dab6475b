"""Installment plan API endpoints for managing payment schedules."""

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends

from api.deps import get_admin_caller, get_caller, get_installment_scheduler
from app.models.order import Order
from app.models.payment import InstallmentPlan
from app.schemas.payment import (
    InstallmentPaymentResponse,
    InstallmentPlanCreate,
    InstallmentPlanResponse,
    InstallmentPreviewRequest,
    InstallmentPreviewResponse,
    InstallmentScheduleItem,
)
from app.services.context import CallerContext
from app.services.installment_service import InstallmentScheduler
from core.exceptions.base import NotFoundException
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/installments", tags=["Installments"])


@router.post("/preview", response_model=InstallmentPreviewResponse)
async def preview_installment_schedule(
    data: InstallmentPreviewRequest,
    caller: CallerContext = Depends(get_caller),
) -> InstallmentPreviewResponse:
    """
    Preview an installment schedule.

    The remainder of an uneven split is charged with the first payment.
    """
    schedule = InstallmentScheduler.preview(
        data.total_amount,
        data.num_installments,
        data.frequency,
        data.start_date or date.today(),
    )
    return InstallmentPreviewResponse(
        total_amount=data.total_amount,
        num_installments=data.num_installments,
        frequency=data.frequency,
        schedule=[InstallmentScheduleItem.model_validate(item) for item in schedule],
    )


@router.post("/", response_model=InstallmentPlanResponse, status_code=201)
async def create_installment_plan(
    data: InstallmentPlanCreate,
    caller: CallerContext = Depends(get_admin_caller),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> InstallmentPlanResponse:
    """Put an existing order on an installment plan (admin)."""
    order = await Order.get_by_id(scheduler.db_session, data.order_id)
    if not order:
        raise NotFoundException(f"Order {data.order_id} not found")

    logger.info(
        f"Create {data.num_installments}-payment plan for order {order.id} by {caller.caller_id}"
    )
    plan = await scheduler.create(
        order,
        data.num_installments,
        data.frequency,
        data.payment_method_id,
        charge_immediately=data.charge_immediately,
        first_date=data.start_date,
    )
    plan = await InstallmentPlan.get_by_id(scheduler.db_session, plan.id)
    return InstallmentPlanResponse.model_validate(plan)


@router.get("/order/{order_id}", response_model=InstallmentPlanResponse)
async def get_plan_for_order(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> InstallmentPlanResponse:
    """Get the most recent installment plan of an order."""
    plan = await InstallmentPlan.get_by_order_id(scheduler.db_session, order_id)
    if not plan:
        raise NotFoundException(f"No installment plan for order {order_id}")
    caller.ensure_owner(plan.user_id)
    return InstallmentPlanResponse.model_validate(plan)


@router.get("/{plan_id}", response_model=InstallmentPlanResponse)
async def get_installment_plan(
    plan_id: str,
    caller: CallerContext = Depends(get_caller),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> InstallmentPlanResponse:
    """Get installment plan with its payments."""
    plan = await scheduler.get(caller, plan_id)
    return InstallmentPlanResponse.model_validate(plan)


@router.post("/{plan_id}/cancel", response_model=InstallmentPlanResponse)
async def cancel_installment_plan(
    plan_id: str,
    caller: CallerContext = Depends(get_caller),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> InstallmentPlanResponse:
    """Stop future installment charges. Payments already made are not refunded."""
    plan = await scheduler.cancel(caller, plan_id)
    return InstallmentPlanResponse.model_validate(plan)


@router.post(
    "/{plan_id}/payments/{payment_id}/attempt", response_model=InstallmentPaymentResponse
)
async def attempt_installment_payment(
    plan_id: str,
    payment_id: str,
    caller: CallerContext = Depends(get_caller),
    scheduler: InstallmentScheduler = Depends(get_installment_scheduler),
) -> InstallmentPaymentResponse:
    """Charge one installment now (manual retry)."""
    logger.info(f"Manual attempt of installment {payment_id} by {caller.caller_id}")
    payment = await scheduler.attempt_payment(
        plan_id, payment_id, ctx=caller, now=datetime.now(timezone.utc)
    )
    return InstallmentPaymentResponse.model_validate(payment)
