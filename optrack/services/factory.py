"""Service factories for settings-based backend selection.

Uses lazy imports so the in-memory profile never loads the Redis pool module.
"""

import logging
from typing import TYPE_CHECKING

from optrack.config import Settings, get_settings

if TYPE_CHECKING:
    from optrack.services.backend_client import BackendClient
    from optrack.services.protocols import OperationStoreProtocol

logger = logging.getLogger(__name__)


def create_operation_store(
    settings: Settings | None = None, client: "BackendClient | None" = None
) -> "OperationStoreProtocol":
    """Factory that returns the configured operation store.

    Args:
        settings: Application settings with store_backend configured
        client: Backend client reused by the HTTP store

    Returns:
        OperationStoreProtocol implementation (HTTP, Redis or in-memory)

    Raises:
        ValueError: If store_backend is not recognised
    """
    settings = settings or get_settings()
    backend = settings.store_backend

    if backend == "http":
        from optrack.services.backend_client import BackendClient
        from optrack.services.operation_store import HttpOperationStore

        logger.info(f"Creating HttpOperationStore: {settings.api_base_url}")
        return HttpOperationStore(client or BackendClient(settings), settings)
    elif backend == "redis":
        from optrack.services.operation_store import RedisOperationStore

        logger.info(f"Creating RedisOperationStore: {settings.redis_url}")
        return RedisOperationStore(settings)
    elif backend == "memory":
        from optrack.services.operation_store import InMemoryOperationStore

        logger.info("Creating InMemoryOperationStore")
        return InMemoryOperationStore(settings)
    else:
        raise ValueError(f"Unknown store_backend: {backend}")
