"""Per-job-type controller registry wired to shared collaborators."""

import logging
from collections.abc import Callable, Iterable
from typing import Any

from optrack.config import Settings, get_settings
from optrack.core.exceptions import OperationConflictError, TrackerError, UnknownJobTypeError
from optrack.schemas.operation import Operation, ProgressSnapshot
from optrack.services.backend_client import BackendClient
from optrack.services.job_types import get_job_type, registered_job_types
from optrack.services.operation_controller import OperationController
from optrack.services.factory import create_operation_store
from optrack.services.protocols import OperationStoreProtocol, PushTransportProtocol
from optrack.services.push_channel import PushChannel
from optrack.services.status_probe import HttpStatusProbe

logger = logging.getLogger(__name__)

ESTIMATE_FIELDS = ("totalSize", "mbTotal", "totalMappings", "estimatedTime", "operationId")


class OperationTracker:
    """One OperationController per job type.

    Mutual exclusion is per type: a second log-import is rejected while one
    is tracked, a depot-scan alongside it is fine.
    """

    def __init__(
        self,
        job_types: Iterable[str] | None = None,
        settings: Settings | None = None,
        client: BackendClient | None = None,
        store: OperationStoreProtocol | None = None,
        transport: PushTransportProtocol | None = None,
        on_change: Callable[[OperationController], Any] | None = None,
        on_complete: Callable[[ProgressSnapshot], Any] | None = None,
        on_error: Callable[[str], Any] | None = None,
        on_refresh: Callable[[], Any] | None = None,
    ):
        self.settings = settings or get_settings()
        self.client = client or BackendClient(self.settings)
        self.store = store or create_operation_store(self.settings, self.client)
        self.transport = transport
        self._controllers: dict[str, OperationController] = {}
        # Job types whose start request is in flight
        self._launching: set[str] = set()

        for name in job_types if job_types is not None else registered_job_types():
            job_spec = get_job_type(name)
            self._controllers[name] = OperationController(
                job_spec,
                store=self.store,
                probe=HttpStatusProbe(job_spec, self.client),
                push_channel=PushChannel(transport, name=name),
                settings=self.settings,
                on_change=on_change,
                on_complete=on_complete,
                on_error=on_error,
                on_refresh=on_refresh,
            )

    def controller(self, job_type: str) -> OperationController:
        """Controller for a job type.

        Raises:
            UnknownJobTypeError: If the type is not registered with this tracker
        """
        try:
            return self._controllers[job_type]
        except KeyError:
            raise UnknownJobTypeError(
                f"Job type not tracked: {job_type}", context={"job_type": job_type}
            ) from None

    @property
    def controllers(self) -> dict[str, OperationController]:
        return dict(self._controllers)

    def is_active(self, job_type: str) -> bool:
        return job_type in self._launching or self.controller(job_type).is_active

    def snapshot(self, job_type: str) -> ProgressSnapshot | None:
        return self.controller(job_type).snapshot

    async def start(self, job_type: str, parameters: dict[str, Any] | None = None) -> Operation:
        """Track an operation that was started elsewhere."""
        if job_type in self._launching:
            raise OperationConflictError(job_type)
        return await self.controller(job_type).start(parameters)

    async def launch(self, job_type: str, parameters: dict[str, Any] | None = None) -> Operation:
        """Trigger the backend job, then track it.

        The start endpoint's initial estimate (size, totals, operation id)
        is merged into the stored parameters for display.

        The job type counts as active from the moment the request is sent, so
        a concurrent launch is rejected instead of starting a second job.

        Raises:
            OperationConflictError: If this job type is already active (before any request)
            BackendError: If the start endpoint fails
        """
        controller = self.controller(job_type)
        if self.is_active(job_type):
            raise OperationConflictError(job_type)

        self._launching.add(job_type)
        try:
            parameters = dict(parameters or {})
            response = await self.client.start_job(controller.job_type.start_path, parameters)
            if response:
                estimate = {k: response[k] for k in ESTIMATE_FIELDS if k in response}
                if estimate:
                    parameters["estimate"] = estimate
            logger.info(f"Started backend job {job_type}")
            return await controller.start(parameters)
        finally:
            self._launching.discard(job_type)

    async def cancel_job(self, job_type: str) -> None:
        """Ask the backend to stop the running job.

        Tracking carries on until the backend confirms the stop; the status
        is checked right away so a quick stop resolves without waiting for
        the next push event.

        Raises:
            TrackerError: If the job type has no cancel endpoint
            BackendError: If the cancel request is rejected
        """
        controller = self.controller(job_type)
        cancel_path = controller.job_type.cancel_path
        if cancel_path is None:
            raise TrackerError(
                f"Job type {job_type} cannot be cancelled", context={"job_type": job_type}
            )

        await self.client.cancel_job(cancel_path)
        controller.note_cancel_requested()
        await controller.check_now()

    async def cancel_tracking(self, job_type: str) -> None:
        await self.controller(job_type).cancel_tracking()

    async def restore_all(self) -> dict[str, ProgressSnapshot | None]:
        """Run restore_on_mount for every controller."""
        restored = {}
        for name, controller in self._controllers.items():
            try:
                restored[name] = await controller.restore_on_mount()
            except Exception:
                logger.exception(f"Failed to restore {name} operation")
                restored[name] = None
        return restored

    def close(self) -> None:
        """Stop every timer and subscription."""
        for controller in self._controllers.values():
            controller.close()
