from app.utils.money import format_cents, percent_of, round_cents
from app.utils.security import create_access_token, decode_token

__all__ = [
    "create_access_token",
    "decode_token",
    "format_cents",
    "percent_of",
    "round_cents",
]
