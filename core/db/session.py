from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import NullPool

from core.config import config
from core.exceptions.base import ConflictException
from core.logging import get_logger

logger = get_logger(__name__)

CONCURRENT_UPDATE_MESSAGE = "Record was modified concurrently; re-fetch and retry"


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def get_engine_config(database_url: str) -> Dict[str, Any]:
    """Engine keyword arguments for the configured backend.

    PostgreSQL gets a bounded connection pool. SQLite (tests, local dev)
    runs without pooling.
    """
    if is_sqlite(database_url):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": NullPool,
        }
    return {
        "pool_size": config.DATABASE_POOL_SIZE,
        "max_overflow": config.DATABASE_MAX_OVERFLOW,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    config.DATABASE_URL,
    **get_engine_config(config.DATABASE_URL)
)


@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite databases."""
    if is_sqlite(config.DATABASE_URL):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session dependency; services own their commits."""
    async with async_session_factory() as session:
        yield session


async def flush_or_conflict(
    db_session: AsyncSession, message: str = CONCURRENT_UPDATE_MESSAGE
) -> None:
    """Flush, reporting a lost optimistic update or unique violation as a conflict.

    The session is rolled back before the ConflictException is raised.
    """
    try:
        await db_session.flush()
    except (StaleDataError, IntegrityError) as e:
        await db_session.rollback()
        raise ConflictException(message) from e


async def commit_or_conflict(
    db_session: AsyncSession, message: str = CONCURRENT_UPDATE_MESSAGE
) -> None:
    try:
        await db_session.commit()
    except (StaleDataError, IntegrityError) as e:
        await db_session.rollback()
        raise ConflictException(message) from e


async def commit_with_retry(
    db_session: AsyncSession,
    apply: Callable[[], Awaitable[None]],
    action: str,
    attempts: int = 3,
) -> None:
    """Record a gateway outcome that has already happened.

    ``apply`` must re-load the rows it changes. When a concurrent writer wins
    the version check the session is rolled back and ``apply`` runs again
    against fresh rows, so the outcome is written on top of the other change.
    """
    for attempt in range(1, attempts + 1):
        try:
            await apply()
            await commit_or_conflict(db_session)
            return
        except ConflictException:
            await db_session.rollback()
            logger.warning(
                f"Concurrent update while recording {action} (attempt {attempt} of {attempts})"
            )
    logger.error(f"Could not record {action} after {attempts} attempts; reconcile manually")
    raise ConflictException(f"Could not record {action}; it needs manual reconciliation")
