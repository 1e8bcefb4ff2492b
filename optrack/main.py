"""Tracker entry point: wire settings, logging and the tracker for a host application."""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from optrack.config import Settings, get_settings
from optrack.core.logging import configure_logging
from optrack.core.redis import close_redis_pool
from optrack.schemas.operation import ProgressSnapshot
from optrack.services.operation_controller import OperationController
from optrack.services.protocols import PushTransportProtocol
from optrack.services.tracker import OperationTracker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def tracker_lifespan(
    transport: PushTransportProtocol | None = None,
    settings: Settings | None = None,
    on_change: Callable[[OperationController], Any] | None = None,
    on_complete: Callable[[ProgressSnapshot], Any] | None = None,
    on_error: Callable[[str], Any] | None = None,
    on_refresh: Callable[[], Any] | None = None,
) -> AsyncIterator[OperationTracker]:
    """Tracker lifespan: restore persisted operations on entry, stop every timer on exit.

    The persisted records are kept on exit so the next mount can restore them.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"  Store backend: {settings.store_backend}")
    logger.info(f"  Backend API: {settings.api_base_url}")
    logger.info(f"  Push transport: {'attached' if transport is not None else 'none'}")
    logger.info("=" * 60)

    tracker = OperationTracker(
        settings=settings,
        transport=transport,
        on_change=on_change,
        on_complete=on_complete,
        on_error=on_error,
        on_refresh=on_refresh,
    )

    restored = await tracker.restore_all()
    for job_type, snapshot in restored.items():
        if snapshot is not None:
            logger.info(f"Restored {job_type} operation at {snapshot.percent:.1f}%")

    try:
        yield tracker
    finally:
        # Shutdown
        tracker.close()
        logger.info("OperationTracker stopped")

        if settings.store_backend == "redis":
            await close_redis_pool()

        logger.info("Shutting down...")
