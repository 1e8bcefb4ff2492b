"""Tests for the Redis pool and its reconnect interval."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from optrack.core import redis as redis_module
from optrack.core.redis import close_redis_pool, get_redis_pool, invalidate_redis_pool


@pytest.fixture(autouse=True)
def fresh_pool_state(monkeypatch):
    monkeypatch.setattr(redis_module, "_redis_pool", None)
    monkeypatch.setattr(redis_module, "_retry_after", None)


@pytest.fixture
def redis_settings(settings):
    return settings.model_copy(
        update={"store_backend": "redis", "redis_retry_interval_seconds": 60.0}
    )


@pytest.mark.asyncio
async def test_pool_is_created_once(redis_settings):
    pool = MagicMock()
    with patch("optrack.core.redis.create_pool", new=AsyncMock(return_value=pool)) as create:
        assert await get_redis_pool(redis_settings) is pool
        assert await get_redis_pool(redis_settings) is pool

    create.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_connect_is_not_retried_within_interval(redis_settings):
    with patch(
        "optrack.core.redis.create_pool", new=AsyncMock(side_effect=OSError("refused"))
    ) as create:
        for _ in range(5):
            assert await get_redis_pool(redis_settings) is None

    create.assert_awaited_once()


@pytest.mark.asyncio
async def test_reconnects_after_interval(redis_settings, monkeypatch):
    pool = MagicMock()
    create = AsyncMock(side_effect=[OSError("refused"), pool])
    with patch("optrack.core.redis.create_pool", new=create):
        assert await get_redis_pool(redis_settings) is None
        assert await get_redis_pool(redis_settings) is None
        assert create.await_count == 1

        # Interval over
        monkeypatch.setattr(redis_module, "_retry_after", 0.0)
        assert await get_redis_pool(redis_settings) is pool

    assert create.await_count == 2


@pytest.mark.asyncio
async def test_invalidate_closes_pool_and_holds_off(redis_settings):
    pool = MagicMock()
    pool.aclose = AsyncMock()
    with patch("optrack.core.redis.create_pool", new=AsyncMock(return_value=pool)) as create:
        await get_redis_pool(redis_settings)
        await invalidate_redis_pool(redis_settings)
        assert await get_redis_pool(redis_settings) is None

    pool.aclose.assert_awaited_once()
    create.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_resets_state(redis_settings):
    pool = MagicMock()
    pool.aclose = AsyncMock()
    with patch("optrack.core.redis.create_pool", new=AsyncMock(side_effect=OSError("refused"))):
        await get_redis_pool(redis_settings)

    await close_redis_pool()

    with patch("optrack.core.redis.create_pool", new=AsyncMock(return_value=pool)):
        assert await get_redis_pool(redis_settings) is pool
    await close_redis_pool()
    pool.aclose.assert_awaited_once()
