"""Redis connection for the operation store.

The store keeps working while Redis is down (degraded mode): records go
to an in-process fallback and do not survive a restart. A failed connect
or command is not retried on every store call; the next attempt waits
until ``redis_retry_interval_seconds`` has passed, so a signal never sits
behind a connect timeout more than once per interval.
"""

import logging
import time

from arq.connections import ArqRedis, RedisSettings, create_pool

from optrack.config import Settings, get_settings

logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_retry_after: float | None = None  # monotonic time of the next allowed connect attempt


def _redis_settings(settings: Settings) -> RedisSettings:
    """Parse redis_url into ARQ RedisSettings with a single fast attempt."""
    base = RedisSettings.from_dsn(settings.redis_url)
    return RedisSettings(
        host=base.host,
        port=base.port,
        unix_socket_path=base.unix_socket_path,
        database=base.database,
        password=base.password,
        ssl=base.ssl,
        conn_timeout=settings.redis_connect_timeout_seconds,
        conn_retries=0,
        conn_retry_delay=0,
    )


def _hold_off(settings: Settings) -> None:
    global _retry_after
    _retry_after = time.monotonic() + settings.redis_retry_interval_seconds


async def get_redis_pool(settings: Settings | None = None) -> ArqRedis | None:
    """Get or create the Redis connection pool.

    Returns None in degraded mode. While a retry interval is running no
    connection is attempted.
    """
    global _redis_pool, _retry_after
    if _redis_pool is not None:
        return _redis_pool
    if _retry_after is not None and time.monotonic() < _retry_after:
        return None

    settings = settings or get_settings()
    try:
        _redis_pool = await create_pool(_redis_settings(settings))
    except Exception as e:
        _hold_off(settings)
        logger.warning(
            f"Redis unavailable, using in-process store for "
            f"{settings.redis_retry_interval_seconds}s: {e}"
        )
        return None

    if _retry_after is not None:
        logger.info("Redis reachable again, leaving degraded mode")
    else:
        logger.info("Redis connection pool created")
    _retry_after = None
    return _redis_pool


async def invalidate_redis_pool(settings: Settings | None = None) -> None:
    """Drop the pool after a failed command and hold off reconnecting."""
    global _redis_pool
    pool, _redis_pool = _redis_pool, None
    _hold_off(settings or get_settings())
    if pool is None:
        return
    try:
        await pool.aclose()
    except Exception as e:
        logger.debug(f"Error closing broken Redis pool: {e}")


async def close_redis_pool() -> None:
    """Close the Redis connection pool on shutdown."""
    global _redis_pool, _retry_after
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
        logger.info("Redis connection pool closed")
    _retry_after = None
