from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy import text
from typing import Optional
import asyncio
import logging
from functools import wraps

from ..core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Async engine for ``url``.

    SQLite files get no pooling and a long lock timeout. An in-memory
    SQLite database is pinned to one shared connection, otherwise every
    session would see its own empty database.
    """
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, future=True)
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        connect_args={
            "timeout": 30,  # seconds to wait on a locked database
            "check_same_thread": False,
        },
        poolclass=StaticPool if _is_memory_sqlite(url) else NullPool,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


engine = make_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = make_session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create all tables; file-backed SQLite is switched to WAL mode first."""
    # Tables must be registered on Base.metadata before create_all
    from . import models  # noqa: F401

    bind = bind or engine
    async with bind.begin() as conn:
        if bind.url.get_backend_name() == "sqlite" and bind.url.database not in (None, "", ":memory:"):
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))
        await conn.run_sync(Base.metadata.create_all)
    logger.debug(f"Database schema ready on {bind.url.render_as_string(hide_password=True)}")


def with_db_retry(max_retries: int = 3, delay: float = 0.5):
    """Retry a coroutine on SQLite "database is locked", backing off exponentially."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    if "database is locked" not in str(e) or attempt == max_retries:
                        if attempt == max_retries:
                            logger.error(f"{func.__name__}: database locked after {max_retries} attempts")
                        raise
                    wait_time = delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"{func.__name__}: database locked, retrying in {wait_time}s "
                        f"(attempt {attempt}/{max_retries})"
                    )
                    await asyncio.sleep(wait_time)

        return wrapper
    return decorator
