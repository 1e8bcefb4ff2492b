"""Collaborator payload adapters.

Push events and poll responses describe the same job with different field
names (``percentComplete`` vs ``progress`` vs ``progressPercent``,
``isProcessing`` vs ``isRunning``...). Each job type gets one adapter per
source; every adapter returns a RawStatus so the reducer never touches the
collaborators' shapes.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

from optrack.schemas.operation import RawStatus

logger = logging.getLogger(__name__)

SEQUENCE_FIELDS = ("sequence", "batch_seq", "batchSeq", "eventId", "event_id")


@dataclass(frozen=True)
class PushPayload:
    """A named event delivered by the push transport."""

    event: str
    data: dict[str, Any]


@dataclass(frozen=True)
class PollPayload:
    """A status endpoint response body."""

    data: dict[str, Any]


def parse_metric(value: Any) -> float:
    """Coerce a loosely-typed numeric field; anything unparseable is 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        numeric = float(value if value is not None else 0)
    except (TypeError, ValueError):
        return 0.0
    return numeric if math.isfinite(numeric) else 0.0


def parse_count(value: Any) -> int:
    return max(int(parse_metric(value)), 0)


def optional_metric(value: Any) -> float | None:
    if value is None:
        return None
    return parse_metric(value)


def first_present(data: dict[str, Any], *keys: str) -> Any:
    """Value of the first key present with a truthy value, like ``a || b || 0``."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def parse_sequence(data: dict[str, Any]) -> int | None:
    """Monotonic sequence number, when the backend attaches one."""
    for key in SEQUENCE_FIELDS:
        if key in data and data[key] is not None:
            try:
                return int(data[key])
            except (TypeError, ValueError):
                logger.debug(f"Ignoring non-integer sequence field {key}={data[key]!r}")
                return None
    return None


def normalize_status(value: Any) -> str | None:
    if value is None:
        return None
    status = str(value).strip().lower()
    return status or None


def parse_running(data: dict[str, Any]) -> bool | None:
    for key in ("isProcessing", "isRunning", "is_running"):
        if key in data:
            return bool(data[key])
    return None


# -----------------------------------------------------------------------------
# log-import
# -----------------------------------------------------------------------------


def _log_import_status(data: dict[str, Any], source: str, status: str | None) -> RawStatus:
    return RawStatus(
        source=source,
        status=status,
        percent=parse_metric(first_present(data, "percentComplete", "progress")),
        processed_count=parse_count(data.get("entriesProcessed")),
        total_scanned=parse_count(first_present(data, "totalLines", "linesProcessed")),
        message=data.get("message") or None,
        rate=optional_metric(data.get("processingRate")),
        estimated_time=data.get("estimatedTime") or None,
        units_done=optional_metric(data.get("mbProcessed")),
        units_total=optional_metric(data.get("mbTotal")),
        unit_label="MB",
        accepted_label="entries",
        scanned_label="lines",
        is_running=parse_running(data),
        sequence=parse_sequence(data),
        error=data.get("error") or None,
        elapsed_minutes=optional_metric(data.get("elapsed")),
    )


def log_import_push(payload: PushPayload) -> RawStatus:
    """ProcessingProgress / FastProcessingComplete events."""
    data = payload.data or {}
    if payload.event in ("FastProcessingComplete", "BulkProcessingComplete"):
        raw = _log_import_status(data, "push", "complete")
        raw.is_running = False
        return raw
    return _log_import_status(data, "push", normalize_status(data.get("status")) or "processing")


def log_import_poll(payload: PollPayload) -> RawStatus:
    """GET /api/management/processing-status."""
    data = payload.data or {}
    status = normalize_status(data.get("status"))
    raw = _log_import_status(data, "poll", status)
    position = parse_metric(data.get("currentPosition"))
    total_size = parse_metric(data.get("totalSize"))
    raw.reached_end = position > 0 and total_size > 0 and position >= total_size
    if raw.is_running and raw.status is None:
        raw.status = "processing"
    return raw


# -----------------------------------------------------------------------------
# depot-scan
# -----------------------------------------------------------------------------


def _depot_scan_status(data: dict[str, Any], source: str, status: str | None) -> RawStatus:
    scanned = first_present(data, "processedMappings", "processedApps")
    applied = data.get("mappingsApplied")
    if applied is None:
        applied = first_present(data, "depotMappingsFoundInSession", "processedMappings")
    return RawStatus(
        source=source,
        status=status,
        percent=parse_metric(first_present(data, "percentComplete", "progressPercent", "progress")),
        processed_count=parse_count(applied),
        total_scanned=parse_count(scanned),
        message=data.get("message") or None,
        rate=optional_metric(data.get("rate")),
        estimated_time=data.get("estimatedTime") or None,
        units_done=optional_metric(scanned),
        units_total=optional_metric(first_present(data, "totalMappings", "totalApps")),
        unit_label="mappings",
        accepted_label="mappings",
        scanned_label="depots",
        is_running=parse_running(data),
        sequence=parse_sequence(data),
        error=data.get("error") or None,
    )


def depot_scan_push(payload: PushPayload) -> RawStatus:
    """DepotMappingStarted / DepotMappingProgress / DepotMappingComplete / failure events."""
    data = payload.data or {}
    if payload.event == "DepotMappingStarted":
        raw = _depot_scan_status(data, "push", "starting")
        raw.message = raw.message or "Starting depot mapping post-processing..."
        raw.is_running = True
        return raw
    if payload.event == "DepotMappingComplete":
        raw = _depot_scan_status(data, "push", "complete")
        raw.is_running = False
        return raw
    if payload.event == "DepotPostProcessingFailed":
        raw = _depot_scan_status(data, "push", "failed")
        raw.error = raw.error or "Depot mapping post-processing failed."
        raw.is_running = False
        return raw
    return _depot_scan_status(data, "push", normalize_status(data.get("status")) or "processing")


def depot_scan_poll(payload: PollPayload) -> RawStatus:
    """GET /api/management/depot-mapping-status."""
    data = payload.data or {}
    raw = _depot_scan_status(data, "poll", normalize_status(data.get("status")))
    if raw.is_running and raw.status is None:
        raw.status = "processing"
    return raw
