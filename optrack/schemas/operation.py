"""Operation tracking schemas."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

COMPLETE_PERCENT = 100.0
MAX_RUNNING_PERCENT = 99.9

TerminalReason = Literal["complete", "empty", "error"]
SignalSource = Literal["push", "poll", "probe"]


class Phase(StrEnum):
    """UI-facing phase of an operation."""

    STARTING = "starting"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


class ControllerStatus(StrEnum):
    """Lifecycle state of an OperationController."""

    IDLE = "idle"
    STARTING = "starting"
    TRACKING = "tracking"
    COMPLETE = "complete"
    FAILED = "failed"
    CLEARED = "cleared"

    @property
    def is_terminal(self) -> bool:
        return self in (ControllerStatus.COMPLETE, ControllerStatus.FAILED, ControllerStatus.CLEARED)


class ChannelMode(StrEnum):
    """Which source currently feeds signals for the active operation."""

    NO_CHANNEL = "no_channel"
    PUSH_ACTIVE = "push_active"
    POLL_ACTIVE = "poll_active"
    RESOLVED = "resolved"


class Outcome(StrEnum):
    """How a tracked operation ended."""

    COMPLETE = "complete"
    FAILED = "failed"
    CLEARED = "cleared"


class ProgressSnapshot(BaseModel):
    """Normalized, UI-ready status. Replaced wholesale on every signal."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    percent: float = Field(default=0.0, ge=0.0, le=COMPLETE_PERCENT)
    processed_count: int = Field(default=0, ge=0)
    total_scanned: int = Field(default=0, ge=0)
    message: str = ""
    detail_message: str = ""
    rate: float | None = None
    estimated_time: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in (Phase.COMPLETE, Phase.FAILED)


class Operation(BaseModel):
    """One long-running backend job being tracked."""

    type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_snapshot: ProgressSnapshot | None = None


@dataclass
class RawStatus:
    """Shape-agnostic status produced by the push/poll adapters.

    Every field is already normalized to the reducer's vocabulary;
    the reducer never looks at collaborator field names.
    """

    source: SignalSource
    status: str | None = None
    percent: float = 0.0
    processed_count: int = 0
    total_scanned: int = 0
    message: str | None = None
    rate: float | None = None
    estimated_time: str | None = None
    units_done: float | None = None
    units_total: float | None = None
    unit_label: str = "items"
    accepted_label: str = "entries"
    scanned_label: str = "lines"
    is_running: bool | None = None
    reached_end: bool = False
    sequence: int | None = None
    error: str | None = None
    elapsed_minutes: float | None = None


@dataclass
class ProbeResult:
    """Ground truth returned by a StatusProbe."""

    is_running: bool
    snapshot: ProgressSnapshot | None = None
    terminal_reason: TerminalReason | None = None
    raw: RawStatus | None = None


@dataclass
class WatchdogState:
    """Silence tracking for the active operation. Owned by the controller."""

    last_signal_at: float | None = None
    armed: bool = False
    possibly_stalled: bool = False
    expiries: int = 0


@dataclass
class ControllerState:
    """Per-controller mutable state, scoped to the controller's lifetime."""

    status: ControllerStatus = ControllerStatus.IDLE
    mode: ChannelMode = ChannelMode.NO_CHANNEL
    operation: Operation | None = None
    snapshot: ProgressSnapshot | None = None
    outcome: Outcome | None = None
    notice: str | None = None
    error: str | None = None
    last_sequence: int | None = None
    consecutive_probe_failures: int = 0
    watchdog: WatchdogState = field(default_factory=WatchdogState)
