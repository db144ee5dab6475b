"""Payment gateway contract consumed by the lifecycle services.

Implementations raise ``PaymentProcessingException`` for gateway failures,
with ``retryable`` set for transient ones.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Protocol


class GatewayStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationResult:
    token: str
    status: GatewayStatus


@dataclass(frozen=True)
class ChargeResult:
    charge_id: str
    status: GatewayStatus
    failure_reason: Optional[str] = None


class PaymentGateway(Protocol):
    async def authorize(
        self, amount: int, payment_method_ref: str, metadata: Optional[dict] = None
    ) -> AuthorizationResult:
        """Reserve ``amount`` cents without capturing."""
        ...

    async def confirm(self, token: str) -> GatewayStatus:
        """Capture a previously authorized amount."""
        ...

    async def refund(self, token: str, amount: int) -> str:
        """Refund ``amount`` cents against an authorization or charge; returns the refund id."""
        ...

    async def charge(
        self,
        amount: int,
        payment_method_ref: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """One-step charge used for installments and transfer deltas."""
        ...

    async def void(self, token: str) -> None:
        """Release an uncaptured authorization."""
        ...
