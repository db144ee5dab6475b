from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import config
from core.exceptions.base import UnauthorizedException


def create_access_token(user_id: str, role: str) -> str:
    """Create a JWT access token carrying the caller id and role."""
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=config.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token."""
    try:
        payload = jwt.decode(
            token, config.SECRET_KEY, algorithms=[config.JWT_ALGORITHM]
        )
    except JWTError:
        raise UnauthorizedException(message="Invalid or expired token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise UnauthorizedException(message="Invalid token payload")
    return payload
