from core.db.base import Base
from core.db.mixins import TimestampMixin
from core.db.session import (
    async_session_factory,
    commit_or_conflict,
    commit_with_retry,
    engine,
    flush_or_conflict,
    get_db,
)
from core.db.types import TZDateTime, utcnow

__all__ = [
    "Base",
    "TimestampMixin",
    "TZDateTime",
    "utcnow",
    "async_session_factory",
    "commit_or_conflict",
    "commit_with_retry",
    "engine",
    "flush_or_conflict",
    "get_db",
]
