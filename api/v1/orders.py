"""Order API endpoints for pricing, checkout and refunds."""

from fastapi import APIRouter, Depends

from api.deps import get_admin_caller, get_caller, get_enrollment_manager, get_order_manager
from app.models.order import Order, PaymentPlanType
from app.schemas.order import (
    CheckoutRequest,
    ConfirmRequest,
    OrderCalculateRequest,
    OrderCalculationResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    RefundRequest,
)
from app.services.context import CallerContext
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.order_service import LineItemInput, OrderLifecycleManager, PaymentPlan
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


def to_plan(data: CheckoutRequest) -> PaymentPlan:
    plan_type = PaymentPlanType(data.plan.type)
    if plan_type == PaymentPlanType.INSTALLMENTS:
        return PaymentPlan.installments(data.plan.count, data.plan.frequency)
    if plan_type == PaymentPlanType.SUBSCRIPTION:
        return PaymentPlan.subscription()
    return PaymentPlan.full()


# ============== Pricing ==============


@router.post("/calculate", response_model=OrderCalculationResponse)
async def calculate_order(
    data: OrderCalculateRequest,
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderCalculationResponse:
    """Price a cart without creating an order."""
    quote = await orders.calculate(
        caller,
        [LineItemInput(item.class_id, item.child_id) for item in data.items],
        discount_code=data.discount_code,
        apply_sibling_discount=data.apply_sibling_discount,
    )
    return OrderCalculationResponse(
        subtotal=quote.subtotal,
        sibling_discount=quote.sibling_discount,
        code_discount=quote.code_discount,
        discount_total=quote.discount_total,
        tax=quote.tax,
        total=quote.total,
        discount_eligible=quote.code_result.eligible if quote.code_result else None,
        discount_reason=quote.code_result.reason if quote.code_result else None,
    )


# ============== Orders ==============


@router.post("/", response_model=OrderResponse, status_code=201)
async def create_order(
    data: OrderCreate,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> OrderResponse:
    """Hold seats for every cart item and create a DRAFT order."""
    logger.info(f"Create order with {len(data.items)} item(s) for {caller.caller_id}")
    result = await manager.create_order(
        caller,
        [LineItemInput(item.class_id, item.child_id) for item in data.items],
        discount_code=data.discount_code,
        apply_sibling_discount=data.apply_sibling_discount,
    )
    return OrderResponse.model_validate(result.order)


@router.get("/my", response_model=OrderListResponse)
async def list_my_orders(
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderListResponse:
    """List the caller's orders, newest first."""
    items = await Order.get_by_user_id(orders.db_session, caller.caller_id)
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in items],
        total=len(items),
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Get order by ID."""
    order = await orders.get(caller, order_id)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/checkout", response_model=OrderResponse)
async def checkout_order(
    order_id: str,
    data: CheckoutRequest,
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Authorize payment for a DRAFT order."""
    order = await orders.checkout(caller, order_id, data.payment_method_id, to_plan(data))
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/confirm", response_model=OrderResponse)
async def confirm_order(
    order_id: str,
    data: ConfirmRequest,
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Capture an authorized order. Safe to repeat with the same token."""
    order = await orders.confirm(
        caller, order_id, data.authorization_token, data.gateway_status
    )
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Cancel an unpaid order and release its seats."""
    order = await orders.cancel(caller, order_id)
    return OrderResponse.model_validate(order)


# ============== Admin Endpoints ==============


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: str,
    data: RefundRequest,
    caller: CallerContext = Depends(get_admin_caller),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Refund part or all of a paid order."""
    logger.info(f"Refund {data.amount} cents on order {order_id} by {caller.caller_id}")
    order = await orders.refund(caller, order_id, data.amount, data.reason)
    return OrderResponse.model_validate(order)
