"""Service protocols (interfaces) for swappable collaborators.

Uses typing.Protocol for structural subtyping (duck typing with type safety).
Implementations don't need to inherit - they just need to have matching methods.
"""

from collections.abc import Callable
from typing import Any, Protocol

from optrack.schemas.operation import Operation, ProbeResult, ProgressSnapshot

EventHandler = Callable[[Any], Any]
ConnectionListener = Callable[[bool], Any]


class OperationStoreProtocol(Protocol):
    """Interface for operation persistence backends (HTTP slot, Redis, memory)."""

    async def save(self, job_type: str, parameters: dict[str, Any]) -> Operation:
        """Persist a freshly started operation.

        Args:
            job_type: Job type key
            parameters: Start-time inputs describing the job

        Returns:
            The stored Operation
        """
        ...

    async def load(self, job_type: str) -> Operation | None:
        """Load the persisted operation for a job type.

        Returns:
            Operation, or None when absent, expired or corrupt
        """
        ...

    async def update(self, job_type: str, snapshot: ProgressSnapshot) -> None:
        """Record the last-known snapshot and refresh the retention window."""
        ...

    async def clear(self, job_type: str) -> None:
        """Remove the persisted operation for a job type."""
        ...


class StatusProbeProtocol(Protocol):
    """Interface for single-shot ground-truth status requests."""

    async def probe(self) -> ProbeResult:
        """Ask the backend whether the job is running.

        Raises:
            ProbeError: On network or HTTP failure
        """
        ...


class PushTransportProtocol(Protocol):
    """Interface for a server-push transport delivering named events."""

    @property
    def is_connected(self) -> bool:
        """Current connection flag, read synchronously."""
        ...

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler for a named event."""
        ...

    def off(self, event: str, handler: EventHandler) -> None:
        """Unregister a handler for a named event."""
        ...

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        """Register a callback invoked with the new flag on connect/disconnect."""
        ...

    def remove_connection_listener(self, listener: ConnectionListener) -> None:
        """Unregister a connection listener."""
        ...
