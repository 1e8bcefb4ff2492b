"""Single-shot ground-truth status requests."""

import logging

from optrack.schemas.operation import Phase, ProbeResult, RawStatus, TerminalReason
from optrack.services.adapters import PollPayload
from optrack.services.backend_client import BackendClient
from optrack.services.job_types import JobTypeSpec
from optrack.services.progress_reducer import reduce

logger = logging.getLogger(__name__)


def terminal_reason_for(raw: RawStatus) -> TerminalReason | None:
    """Why a not-running job stopped, or None when the payload cannot say.

    ``complete`` needs an explicit status or a reached-end-of-input signal;
    percentages are never enough.
    """
    phase = reduce(raw).phase
    if phase == Phase.COMPLETE or raw.reached_end:
        return "complete"
    if phase == Phase.FAILED or raw.error:
        return "error"
    if raw.processed_count == 0 and raw.total_scanned == 0 and not raw.percent:
        return "empty"
    return None


def to_probe_result(raw: RawStatus) -> ProbeResult:
    """Interpret an adapted status payload as a probe answer."""
    snapshot = reduce(raw)
    is_running = raw.is_running
    if is_running is None:
        # No running flag in the payload: fall back to the phase
        is_running = not snapshot.is_terminal
    if is_running:
        return ProbeResult(is_running=True, snapshot=snapshot, raw=raw)
    return ProbeResult(
        is_running=False,
        snapshot=snapshot,
        terminal_reason=terminal_reason_for(raw),
        raw=raw,
    )


class HttpStatusProbe:
    """StatusProbe backed by the job type's status endpoint.

    Idempotent and side-effect free: a GET plus pure adaptation.
    """

    def __init__(self, job_type: JobTypeSpec, client: BackendClient):
        self.job_type = job_type
        self.client = client

    async def probe(self) -> ProbeResult:
        """Ask the backend whether the job is running.

        Raises:
            ProbeError: On network or HTTP failure (not swallowed)
        """
        data = await self.client.get_status(self.job_type.status_path)
        raw = self.job_type.poll_adapter(PollPayload(data=data))
        result = to_probe_result(raw)
        logger.debug(
            f"Probe {self.job_type.name}: running={result.is_running} "
            f"reason={result.terminal_reason} percent={raw.percent}"
        )
        return result
