import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Ensure critical settings exist before the app/config modules import.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-change-me-please-0123456789")
os.environ.setdefault("APP_ENV", "test")

from api.deps import get_gateway, get_notifier
from app.models.child import Child
from app.models.class_ import Class
from app.models.discount import DiscountCode, DiscountType
from app.services.context import CallerContext, Role
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.gateway import AuthorizationResult, ChargeResult, GatewayStatus
from app.services.notifier import Notifier
from app.utils.security import create_access_token
from core.db import get_db
from core.db.base import Base
from main import app

# Use SQLite for testing
TEST_DATABASE_URL = os.environ["DATABASE_URL"]

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

PARENT_ID = "parent-0001"
OTHER_PARENT_ID = "parent-0002"
ADMIN_ID = "admin-0001"


class FakeGateway:
    """In-memory payment gateway with scriptable outcomes."""

    def __init__(self):
        self.authorize_status = GatewayStatus.SUCCEEDED
        self.confirm_status = GatewayStatus.SUCCEEDED
        self.charge_status = GatewayStatus.SUCCEEDED
        self.charge_errors: List[Exception] = []  # raised by successive charge calls
        self.refund_error: Optional[Exception] = None

        self.authorizations: Dict[str, int] = {}
        self.confirmed: List[str] = []
        self.refunds: List[tuple] = []
        self.charges: List[Dict[str, Any]] = []
        self.voided: List[str] = []
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    async def authorize(self, amount, payment_method_ref, metadata=None):
        token = self._next("pi")
        self.authorizations[token] = amount
        return AuthorizationResult(token=token, status=self.authorize_status)

    async def confirm(self, token):
        self.confirmed.append(token)
        return self.confirm_status

    async def refund(self, token, amount):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((token, amount))
        return self._next("re")

    async def charge(self, amount, payment_method_ref, idempotency_key=None, metadata=None):
        self.charges.append(
            {
                "amount": amount,
                "payment_method_ref": payment_method_ref,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        if self.charge_errors:
            raise self.charge_errors.pop(0)
        failure_reason = "Card declined" if self.charge_status == GatewayStatus.FAILED else None
        return ChargeResult(
            charge_id=self._next("ch"), status=self.charge_status, failure_reason=failure_reason
        )

    async def void(self, token):
        self.voided.append(token)


class RecordingNotifier(Notifier):
    """Keeps delivered notifications for assertions."""

    def __init__(self):
        self.sent: List[tuple] = []

    def deliver(self, user_id, event, payload):
        self.sent.append((user_id, event, payload))

    def events(self, event: str) -> List[tuple]:
        return [n for n in self.sent if n[1] == event]


@pytest.fixture(autouse=True)
async def setup_db():
    """Create and drop all tables for each test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for testing."""
    async with TestSessionLocal() as session:
        yield session


@pytest.fixture
async def other_session() -> AsyncGenerator[AsyncSession, None]:
    """A second session, standing in for a concurrent request."""
    async with TestSessionLocal() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def manager(db_session: AsyncSession, gateway: FakeGateway, notifier: RecordingNotifier):
    """Enrollment manager wired to the fake collaborators."""
    return EnrollmentLifecycleManager(db_session, gateway, notifier=notifier)


@pytest.fixture
def parent_ctx() -> CallerContext:
    return CallerContext(caller_id=PARENT_ID, role=Role.PARENT)


@pytest.fixture
def other_parent_ctx() -> CallerContext:
    return CallerContext(caller_id=OTHER_PARENT_ID, role=Role.PARENT)


@pytest.fixture
def admin_ctx() -> CallerContext:
    return CallerContext(caller_id=ADMIN_ID, role=Role.ADMIN)


@pytest.fixture
async def client(
    gateway: FakeGateway, notifier: RecordingNotifier
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""

    async def override_get_db():
        async with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    """Authentication headers for the test parent."""
    return {"Authorization": f"Bearer {create_access_token(PARENT_ID, Role.PARENT.value)}"}


@pytest.fixture
def admin_headers() -> dict:
    """Authentication headers for an admin."""
    return {"Authorization": f"Bearer {create_access_token(ADMIN_ID, Role.ADMIN.value)}"}


@pytest.fixture
def create_class(db_session: AsyncSession):
    """Factory fixture to create classes."""

    async def _create_class(
        name: str = "Test Soccer Class",
        capacity: int = 10,
        price: int = 10000,
        start_date: date = None,
        session_count: int = 10,
        installments_enabled: bool = True,
        is_active: bool = True,
        program_id: str = None,
    ) -> Class:
        class_ = Class(
            name=name,
            capacity=capacity,
            price=price,
            start_date=start_date or date.today() + timedelta(days=30),
            session_count=session_count,
            installments_enabled=installments_enabled,
            is_active=is_active,
            program_id=program_id,
        )
        db_session.add(class_)
        await db_session.commit()
        return class_

    return _create_class


@pytest.fixture
def create_child(db_session: AsyncSession):
    """Factory fixture to create children."""

    async def _create_child(first_name: str = "Test", user_id: str = PARENT_ID) -> Child:
        child = Child(user_id=user_id, first_name=first_name, last_name="Child", is_active=True)
        db_session.add(child)
        await db_session.commit()
        return child

    return _create_child


@pytest.fixture
def create_discount_code(db_session: AsyncSession):
    """Factory fixture to create discount codes."""

    async def _create_code(
        code: str = "SAVE20",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: Decimal = Decimal("20"),
        **kwargs,
    ) -> DiscountCode:
        discount_code = DiscountCode(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            valid_from=kwargs.pop("valid_from", datetime.now(timezone.utc) - timedelta(days=1)),
            applicable_class_ids=kwargs.pop("applicable_class_ids", []),
            applicable_program_ids=kwargs.pop("applicable_program_ids", []),
            **kwargs,
        )
        db_session.add(discount_code)
        await db_session.commit()
        return discount_code

    return _create_code


@pytest.fixture
def enroll_and_pay(manager: EnrollmentLifecycleManager):
    """Factory fixture: enroll a child, check out and confirm, returning the ACTIVE enrollment."""

    async def _enroll_and_pay(ctx: CallerContext, child: Child, class_: Class, plan=None, **kwargs):
        result = await manager.create(ctx, child.id, class_.id, **kwargs)
        order = await manager.orders.checkout(ctx, result.order.id, "pm_card_visa", plan)
        if order.authorization_token:
            order = await manager.orders.confirm(
                ctx, order.id, order.authorization_token, GatewayStatus.SUCCEEDED
            )
        enrollment = await manager.get(ctx, result.enrollment.id)
        return enrollment, order

    return _enroll_and_pay
