"""Enrollment and waitlist API endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends

from api.deps import get_admin_caller, get_caller, get_enrollment_manager
from app.models.enrollment import EnrollmentStatus
from app.schemas.enrollment import (
    CancellationRefundPreview,
    CancellationResponse,
    EnrollmentCancel,
    EnrollmentCreate,
    EnrollmentCreateResponse,
    EnrollmentHistoryResponse,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollmentTransfer,
    TransferResponse,
    WaitlistClaimRequest,
    WaitlistEntryResponse,
    WaitlistListResponse,
)
from app.schemas.order import OrderResponse
from app.services.context import CallerContext
from app.services.enrollment_service import (
    CancellationResult,
    EnrollmentLifecycleManager,
    EnrollmentResult,
)
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/enrollments", tags=["Enrollments"])


def result_to_response(result: EnrollmentResult) -> EnrollmentCreateResponse:
    return EnrollmentCreateResponse(
        enrollment=EnrollmentResponse.model_validate(result.enrollment),
        order=OrderResponse.model_validate(result.order) if result.order else None,
        waitlist_position=result.waitlist_position,
    )


def cancellation_to_response(result: CancellationResult) -> CancellationResponse:
    return CancellationResponse(
        enrollment=EnrollmentResponse.model_validate(result.enrollment),
        refund=(
            CancellationRefundPreview.model_validate(result.refund)
            if result.refund else None
        ),
        refunded=result.refunded,
        refund_pending=result.refund_pending,
    )


# ============== User Endpoints ==============


@router.post("/", response_model=EnrollmentCreateResponse, status_code=201)
async def create_enrollment(
    data: EnrollmentCreate,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentCreateResponse:
    """
    Enroll a child in a class.

    Returns a PENDING enrollment with a DRAFT order to check out, or a
    WAITLIST enrollment and its queue position when the class is full.
    """
    logger.info(f"Create enrollment for child {data.child_id} in class {data.class_id}")
    result = await manager.create(
        caller,
        data.child_id,
        data.class_id,
        discount_code=data.discount_code,
        apply_sibling_discount=data.apply_sibling_discount,
        is_priority=data.is_priority,
    )
    return result_to_response(result)


@router.get("/my", response_model=EnrollmentListResponse)
async def list_my_enrollments(
    status: Optional[EnrollmentStatus] = None,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentListResponse:
    """List the caller's enrollments, optionally filtered by status."""
    enrollments = await manager.list_for_user(caller, status=status)
    return EnrollmentListResponse(
        items=[EnrollmentResponse.model_validate(e) for e in enrollments],
        total=len(enrollments),
    )


@router.get("/refunds/pending", response_model=EnrollmentListResponse)
async def list_pending_refunds(
    caller: CallerContext = Depends(get_admin_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentListResponse:
    """Enrollments whose refund failed at the gateway and is still owed (admin)."""
    enrollments = await manager.list_pending_refunds(caller)
    return EnrollmentListResponse(
        items=[EnrollmentResponse.model_validate(e) for e in enrollments],
        total=len(enrollments),
    )


@router.get("/{enrollment_id}", response_model=EnrollmentResponse)
async def get_enrollment(
    enrollment_id: str,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentResponse:
    """Get enrollment by ID."""
    enrollment = await manager.get(caller, enrollment_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.get("/{enrollment_id}/history", response_model=list[EnrollmentHistoryResponse])
async def get_enrollment_history(
    enrollment_id: str,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> list[EnrollmentHistoryResponse]:
    """Status changes and transfers for an enrollment, oldest first."""
    rows = await manager.history(caller, enrollment_id)
    return [EnrollmentHistoryResponse.model_validate(r) for r in rows]


@router.get(
    "/{enrollment_id}/cancellation-preview", response_model=CancellationRefundPreview
)
async def preview_cancellation(
    enrollment_id: str,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> CancellationRefundPreview:
    """Refund the caller would receive by cancelling now."""
    breakdown = await manager.preview_cancellation(caller, enrollment_id)
    return CancellationRefundPreview.model_validate(breakdown)


@router.post("/{enrollment_id}/cancel", response_model=CancellationResponse)
async def cancel_enrollment(
    enrollment_id: str,
    data: EnrollmentCancel,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> CancellationResponse:
    """Cancel an enrollment, refunding paid seats per the refund policy."""
    logger.info(f"Cancel enrollment {enrollment_id} by {caller.caller_id}")
    result = await manager.cancel(caller, enrollment_id, reason=data.reason)
    return cancellation_to_response(result)


@router.post("/{enrollment_id}/transfer", response_model=TransferResponse)
async def transfer_enrollment(
    enrollment_id: str,
    data: EnrollmentTransfer,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> TransferResponse:
    """Move an active enrollment to another class."""
    logger.info(f"Transfer enrollment {enrollment_id} to class {data.new_class_id}")
    result = await manager.transfer(caller, enrollment_id, data.new_class_id)
    return TransferResponse(
        enrollment=EnrollmentResponse.model_validate(result.enrollment),
        from_class_id=result.from_class_id,
        price_delta=result.price_delta,
        charge_id=result.charge_id,
        refunded=result.refunded,
        refund_pending=result.refund_pending,
    )


@router.post("/{enrollment_id}/claim", response_model=EnrollmentCreateResponse)
async def claim_waitlist_spot(
    enrollment_id: str,
    data: WaitlistClaimRequest,
    caller: CallerContext = Depends(get_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentCreateResponse:
    """Claim an offered waitlist seat within its claim window."""
    result = await manager.claim_waitlist(
        caller, enrollment_id, discount_code=data.discount_code
    )
    return result_to_response(result)


# ============== Admin Endpoints ==============


@router.post("/{enrollment_id}/promote", response_model=EnrollmentResponse)
async def promote_waitlist_entry(
    enrollment_id: str,
    caller: CallerContext = Depends(get_admin_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentResponse:
    """Move a waitlisted enrollment straight to ACTIVE."""
    enrollment = await manager.promote_waitlist(caller, enrollment_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/{enrollment_id}/retry-refund", response_model=EnrollmentResponse)
async def retry_pending_refund(
    enrollment_id: str,
    caller: CallerContext = Depends(get_admin_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> EnrollmentResponse:
    """Re-issue a refund that previously failed at the gateway."""
    enrollment = await manager.retry_pending_refund(caller, enrollment_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.get("/waitlist/{class_id}", response_model=WaitlistListResponse)
async def list_waitlist(
    class_id: str,
    caller: CallerContext = Depends(get_admin_caller),
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> WaitlistListResponse:
    """Waitlist for a class in queue order."""
    entries = await manager.waitlist.list(class_id)
    return WaitlistListResponse(
        class_id=class_id,
        items=[WaitlistEntryResponse.model_validate(e) for e in entries],
        total=len(entries),
    )
