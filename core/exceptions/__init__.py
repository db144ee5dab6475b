from core.exceptions.base import (
    CustomException,
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
    ConflictException,
    ExpiredClaimException,
    PaymentProcessingException,
    ValidationException,
)

__all__ = [
    "CustomException",
    "UnauthorizedException",
    "ForbiddenException",
    "NotFoundException",
    "ConflictException",
    "ExpiredClaimException",
    "PaymentProcessingException",
    "ValidationException",
]
