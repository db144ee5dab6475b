from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.context import CallerContext, Role
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.gateway import PaymentGateway
from app.services.installment_service import InstallmentScheduler
from app.services.notifier import CeleryNotifier, LoggingNotifier, Notifier
from app.services.order_service import OrderLifecycleManager
from app.services.stripe_service import StripeGateway
from app.utils.security import decode_token
from core.config import config
from core.db import get_db
from core.exceptions.base import UnauthorizedException

bearer_scheme = HTTPBearer(auto_error=False)


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CallerContext:
    """Build the caller context from the bearer JWT."""
    if not credentials:
        raise UnauthorizedException(message="Not authenticated")

    payload = decode_token(credentials.credentials)
    try:
        role = Role(payload.get("role", Role.PARENT.value))
    except ValueError:
        raise UnauthorizedException(message="Invalid token role")

    if role == Role.SYSTEM:
        raise UnauthorizedException(message="System tokens are not accepted over HTTP")

    return CallerContext(caller_id=payload["sub"], role=role)


async def get_admin_caller(
    caller: CallerContext = Depends(get_caller),
) -> CallerContext:
    """Get the caller if they have the admin role."""
    caller.ensure_admin()
    return caller


def get_gateway() -> PaymentGateway:
    return StripeGateway()


def get_notifier() -> Notifier:
    if config.APP_ENV == "development":
        return LoggingNotifier()
    return CeleryNotifier()


async def get_enrollment_manager(
    db_session: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> EnrollmentLifecycleManager:
    return EnrollmentLifecycleManager(db_session, gateway, notifier=notifier)


async def get_order_manager(
    manager: EnrollmentLifecycleManager = Depends(get_enrollment_manager),
) -> OrderLifecycleManager:
    """Order manager wired to activate and release enrollments."""
    return manager.orders


async def get_installment_scheduler(
    db_session: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> InstallmentScheduler:
    return InstallmentScheduler(db_session, gateway, notifier)
