"""Explicit caller identity passed into every caller-facing service call."""

import enum
from dataclasses import dataclass

from core.exceptions.base import ForbiddenException


class Role(str, enum.Enum):
    """Caller roles."""

    PARENT = "parent"
    ADMIN = "admin"
    SYSTEM = "system"  # Background jobs and gateway webhooks


@dataclass(frozen=True)
class CallerContext:
    caller_id: str
    role: Role = Role.PARENT

    @classmethod
    def system(cls) -> "CallerContext":
        return cls(caller_id="system", role=Role.SYSTEM)

    @property
    def is_privileged(self) -> bool:
        return self.role in (Role.ADMIN, Role.SYSTEM)

    def ensure_owner(self, owner_id: str) -> None:
        """Raise unless the caller owns the entity or is privileged."""
        if not self.is_privileged and owner_id != self.caller_id:
            raise ForbiddenException("You don't have permission to access this resource")

    def ensure_admin(self) -> None:
        if not self.is_privileged:
            raise ForbiddenException("Admin access required")
