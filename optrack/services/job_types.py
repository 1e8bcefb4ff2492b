"""Registry of trackable job types and their collaborator wiring."""

from collections.abc import Callable
from dataclasses import dataclass

from optrack.core.exceptions import UnknownJobTypeError
from optrack.schemas.operation import RawStatus
from optrack.services.adapters import (
    PollPayload,
    PushPayload,
    depot_scan_poll,
    depot_scan_push,
    log_import_poll,
    log_import_push,
)

LOG_IMPORT = "log-import"
DEPOT_SCAN = "depot-scan"


@dataclass(frozen=True)
class JobTypeSpec:
    """Everything the tracker needs to know about one kind of backend job."""

    name: str
    status_path: str
    start_path: str
    push_adapter: Callable[[PushPayload], RawStatus]
    poll_adapter: Callable[[PollPayload], RawStatus]
    progress_events: tuple[str, ...] = ()
    complete_events: tuple[str, ...] = ()
    failed_events: tuple[str, ...] = ()
    refresh_events: tuple[str, ...] = ()
    cancel_path: str | None = None  # None = the backend offers no cancel endpoint

    @property
    def signal_events(self) -> tuple[str, ...]:
        """Events that carry operation state (everything except refresh events)."""
        return self.progress_events + self.complete_events + self.failed_events


_REGISTRY: dict[str, JobTypeSpec] = {}


def register_job_type(job_spec: JobTypeSpec) -> JobTypeSpec:
    """Register (or replace) a job type."""
    _REGISTRY[job_spec.name] = job_spec
    return job_spec


def get_job_type(name: str) -> JobTypeSpec:
    """Look up a registered job type.

    Raises:
        UnknownJobTypeError: If no JobTypeSpec is registered under ``name``
    """
    try:
        return _REGISTRY[name]
    except KeyError:
        raise UnknownJobTypeError(
            f"Unknown job type: {name}", context={"job_type": name}
        ) from None


def registered_job_types() -> list[str]:
    return sorted(_REGISTRY)


register_job_type(
    JobTypeSpec(
        name=LOG_IMPORT,
        status_path="/api/management/processing-status",
        start_path="/api/management/process-all-logs",
        cancel_path="/api/management/cancel-processing",
        push_adapter=log_import_push,
        poll_adapter=log_import_poll,
        progress_events=("ProcessingProgress",),
        complete_events=("FastProcessingComplete", "BulkProcessingComplete"),
        refresh_events=("DownloadsRefresh",),
    )
)

register_job_type(
    JobTypeSpec(
        name=DEPOT_SCAN,
        status_path="/api/management/depot-mapping-status",
        start_path="/api/depots/rebuild",
        cancel_path="/api/gameinfo/steamkit/cancel",
        push_adapter=depot_scan_push,
        poll_adapter=depot_scan_poll,
        progress_events=("DepotMappingStarted", "DepotMappingProgress"),
        complete_events=("DepotMappingComplete",),
        failed_events=("DepotPostProcessingFailed",),
    )
)
