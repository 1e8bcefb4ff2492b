"""Pure mapping from a normalized RawStatus to a UI-facing ProgressSnapshot.

Policies:
- ``complete`` only when the payload's own status says so. 100% of a
  sub-stage is not completion; that is what ``finalizing`` is for.
- Every non-complete phase is capped at 99.9% so rounding never shows "done".
- ``0 accepted / N scanned`` means every unit was a duplicate, which is
  reported as such instead of "nothing happened".
"""

import math

from optrack.schemas.operation import (
    COMPLETE_PERCENT,
    MAX_RUNNING_PERCENT,
    Phase,
    ProgressSnapshot,
    RawStatus,
)

DETAIL_SEPARATOR = " • "

COMPLETE_STATUSES = frozenset({"complete", "completed"})
FAILED_STATUSES = frozenset({"failed", "error"})
FINALIZING_STATUSES = frozenset({"finalizing"})
STARTING_STATUSES = frozenset({"starting", "queued", "pending"})


def phase_for(status: str | None) -> Phase:
    """Map a raw status string to a phase. Unknown statuses are ``running``."""
    if status in COMPLETE_STATUSES:
        return Phase.COMPLETE
    if status in FAILED_STATUSES:
        return Phase.FAILED
    if status in FINALIZING_STATUSES:
        return Phase.FINALIZING
    if status in STARTING_STATUSES:
        return Phase.STARTING
    return Phase.RUNNING


def clamp_percent(percent: float, phase: Phase) -> float:
    if phase == Phase.COMPLETE:
        return COMPLETE_PERCENT
    if not math.isfinite(percent) or percent < 0:
        return 0.0
    return min(MAX_RUNNING_PERCENT, percent)


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.1f}"


def format_progress_detail(
    processed: int,
    total_scanned: int,
    accepted_label: str = "entries",
    scanned_label: str = "lines",
) -> str:
    """Describe accepted vs scanned units.

    ``processed`` counts accepted units (valid, non-duplicate), ``total_scanned``
    counts every unit examined.
    """
    processed = max(processed, 0)
    total_scanned = max(total_scanned, 0)

    if processed == 0 and total_scanned == 0:
        return ""
    if processed == 0:
        return (
            f"0 {accepted_label} from {total_scanned:,} total {scanned_label} "
            "(all duplicates already processed)"
        )
    if processed == total_scanned:
        return f"{processed:,} {accepted_label} processed"
    return f"{processed:,} {accepted_label} from {total_scanned:,} total {scanned_label}"


def format_units(raw: RawStatus) -> str:
    """``Processing: 1.5 MB of 10.0 MB`` style line, empty without unit data."""
    if raw.units_done is None and raw.units_total is None:
        return ""
    done = raw.units_done or 0.0
    total = raw.units_total or 0.0
    if raw.unit_label == "MB":
        return f"Processing: {done:.1f} MB of {total:.1f} MB"
    return f"Processing: {_format_number(done)} of {_format_number(total)} {raw.unit_label}"


def format_rate(raw: RawStatus) -> str:
    if not raw.rate:
        return ""
    return f"Speed: {raw.rate:.1f} {raw.unit_label}/s"


def _join(*segments: str) -> str:
    return DETAIL_SEPARATOR.join(s for s in segments if s)


def reduce(raw: RawStatus) -> ProgressSnapshot:
    """Map a RawStatus to a ProgressSnapshot.

    Args:
        raw: Adapter output from either the push or the poll source

    Returns:
        A new snapshot; never a partial merge with a previous one
    """
    phase = phase_for(raw.status)
    counts = format_progress_detail(
        raw.processed_count, raw.total_scanned, raw.accepted_label, raw.scanned_label
    )
    all_duplicates = raw.processed_count == 0 and raw.total_scanned > 0

    if phase == Phase.COMPLETE:
        message = "Processing complete"
        detail = counts
        if counts and raw.elapsed_minutes:
            detail = f"{counts} in {raw.elapsed_minutes:.1f} minutes"
    elif phase == Phase.FAILED:
        message = raw.error or raw.message or "Operation failed"
        detail = counts
    else:
        if phase == Phase.FINALIZING:
            headline = raw.message or "Finalizing..."
        elif phase == Phase.STARTING:
            headline = raw.message or "Starting..."
        else:
            headline = format_units(raw) or raw.message or "Processing..."

        if all_duplicates:
            # Duplicate-only runs lead with the explanation, the progress line moves to detail
            message = counts
            detail = _join(headline, format_rate(raw))
        else:
            message = headline
            detail = _join(counts, format_rate(raw))

    return ProgressSnapshot(
        phase=phase,
        percent=clamp_percent(raw.percent, phase),
        processed_count=raw.processed_count,
        total_scanned=raw.total_scanned,
        message=message,
        detail_message=detail,
        rate=raw.rate,
        estimated_time=raw.estimated_time,
    )
