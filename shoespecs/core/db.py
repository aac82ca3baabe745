"""asyncpg pool for the article store.

Each process (runner, child, resolver) owns at most one small pool; a child
handles a single row, so its pool never grows past one connection in practice.
"""

import asyncio
import re

import asyncpg
import structlog

from shoespecs.core.config import require_store_settings, settings
from shoespecs.core.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

POOL_MIN_SIZE = 1
POOL_MAX_SIZE = 4
APPLICATION_NAME = "shoespecs"

_pool: asyncpg.Pool | None = None
_pool_lock = asyncio.Lock()

# postgresql+asyncpg:// and friends are SQLAlchemy spellings asyncpg rejects.
_DRIVER_SUFFIX = re.compile(r"^postgres(?:ql)?\+\w+://")


def normalise_dsn(url: str) -> str:
    return _DRIVER_SUFFIX.sub("postgresql://", url.strip())


async def _create_pool() -> asyncpg.Pool:
    return await asyncio.wait_for(
        asyncpg.create_pool(
            dsn=normalise_dsn(str(settings.DATABASE_URL)),
            min_size=POOL_MIN_SIZE,
            max_size=POOL_MAX_SIZE,
            command_timeout=settings.STORE_CALL_TIMEOUT,
            server_settings={"application_name": APPLICATION_NAME},
        ),
        timeout=settings.STORE_CALL_TIMEOUT,
    )


async def get_db_pool() -> asyncpg.Pool:
    """Return the process-wide pool, connecting (with retries) on first use."""
    global _pool

    if _pool is None:
        async with _pool_lock:
            if _pool is None:
                require_store_settings(settings)
                _pool = await retry_with_backoff(
                    _create_pool,
                    max_attempts=settings.STORE_RETRY_ATTEMPTS,
                    base_delay=settings.STORE_RETRY_BASE_DELAY,
                    jitter=settings.STORE_RETRY_JITTER,
                )
                logger.info("db.pool.created", table=settings.ARTICLES_TABLE, max_size=POOL_MAX_SIZE)
    return _pool  # type: ignore[return-value]


async def close_db_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("db.pool.closed")
