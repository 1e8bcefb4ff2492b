"""Operation tracking state machine.

One controller per job type. It owns the poll task, the watchdog timer and
the channel mode, and reconciles push events, poll results and forced
probes into a single ProgressSnapshot.

    IDLE -> STARTING -> TRACKING -> {COMPLETE | FAILED | CLEARED} -> IDLE

Channel mode while tracking:

    NO_CHANNEL -> PUSH_ACTIVE <-> POLL_ACTIVE -> RESOLVED
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from optrack.config import Settings, get_settings
from optrack.core.exceptions import OperationConflictError, ProbeUnavailableError, TrackerError
from optrack.core.logging import operation_context
from optrack.schemas.operation import (
    ChannelMode,
    ControllerState,
    ControllerStatus,
    Operation,
    Outcome,
    Phase,
    ProbeResult,
    ProgressSnapshot,
    RawStatus,
    WatchdogState,
)
from optrack.services.adapters import PushPayload
from optrack.services.job_types import JobTypeSpec
from optrack.services.poll_fallback import PollFallback
from optrack.services.progress_reducer import reduce
from optrack.services.protocols import OperationStoreProtocol, StatusProbeProtocol
from optrack.services.push_channel import PushChannel
from optrack.services.status_probe import to_probe_result
from optrack.services.watchdog import Watchdog

logger = logging.getLogger(__name__)

NOTICE_TRACKING_ENDED = "Tracking ended without a confirmed result"
NOTICE_NOTHING_TO_PROCESS = "Nothing to process"
NOTICE_CANCELLED = "Tracking cancelled"

_OUTCOME_STATUS = {
    Outcome.COMPLETE: ControllerStatus.COMPLETE,
    Outcome.FAILED: ControllerStatus.FAILED,
    Outcome.CLEARED: ControllerStatus.CLEARED,
}


class OperationController:
    """Tracks at most one live operation of a single job type.

    Args:
        job_type: Job type wiring (events, adapters)
        store: Operation persistence backend
        probe: Ground-truth status probe
        push_channel: Push subscription wrapper (None = poll only)
        settings: Optional settings override (uses get_settings() if None)
        on_change: Called with the controller after every visible state change
        on_complete: Called with the final snapshot when an operation completes
        on_error: Called with a message on failure or persistent probe errors
        on_refresh: Called on silent background refresh events
    """

    def __init__(
        self,
        job_type: JobTypeSpec,
        store: OperationStoreProtocol,
        probe: StatusProbeProtocol,
        push_channel: PushChannel | None = None,
        settings: Settings | None = None,
        on_change: Callable[["OperationController"], Any] | None = None,
        on_complete: Callable[[ProgressSnapshot], Any] | None = None,
        on_error: Callable[[str], Any] | None = None,
        on_refresh: Callable[[], Any] | None = None,
    ):
        self.job_type = job_type
        self.name = job_type.name
        self.store = store
        self.probe = probe
        self.push = push_channel or PushChannel(None, name=self.name)
        self.settings = settings or get_settings()
        self.on_change = on_change
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_refresh = on_refresh

        self._state = ControllerState()
        self.poll = PollFallback(
            probe,
            self.settings.poll_interval_seconds,
            on_result=self._on_poll_result,
            on_error=self._on_poll_error,
            name=f"{self.name}:poll",
        )
        self.watchdog = Watchdog(
            self.settings.watchdog_timeout_seconds,
            on_expire=self._on_watchdog_expired,
            state=self._state.watchdog,
            name=f"{self.name}:watchdog",
        )
        self._idle_handle: asyncio.TimerHandle | None = None
        self._last_persist_at: float | None = None
        self._pending_snapshot: ProgressSnapshot | None = None
        self._persist_task: asyncio.Task | None = None
        # Every store call for this job type goes through this lock, in order
        self._store_lock = asyncio.Lock()
        self._cancel_requested = False
        self._closed = False
        self._subscribe()

    # ------------------------------------------------------------------
    # Read-only view for the rendering layer
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerStatus:
        return self._state.status

    @property
    def mode(self) -> ChannelMode:
        return self._state.mode

    @property
    def snapshot(self) -> ProgressSnapshot | None:
        return self._state.snapshot

    @property
    def operation(self) -> Operation | None:
        return self._state.operation

    @property
    def outcome(self) -> Outcome | None:
        return self._state.outcome

    @property
    def notice(self) -> str | None:
        return self._state.notice

    @property
    def error(self) -> str | None:
        return self._state.error

    @property
    def possibly_stalled(self) -> bool:
        return self._state.watchdog.possibly_stalled

    @property
    def is_active(self) -> bool:
        """True while a new start() of this job type would be rejected."""
        return self._state.status in (ControllerStatus.STARTING, ControllerStatus.TRACKING)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe(self) -> None:
        for event in self.job_type.signal_events:
            self.push.subscribe(event, self._push_handler(event))
        for event in self.job_type.refresh_events:
            self.push.subscribe(event, self._on_refresh_event)
        self.push.add_connection_listener(self._on_link_change)

    def _push_handler(self, event: str) -> Callable[[Any], Any]:
        async def handle(payload: Any) -> None:
            data = payload if isinstance(payload, dict) else {}
            raw = self.job_type.push_adapter(PushPayload(event=event, data=data))
            await self.on_signal(raw)

        return handle

    async def _on_refresh_event(self, payload: Any) -> None:
        # Background refreshes never touch the tracked operation
        await self._emit(self.on_refresh)

    def _on_link_change(self, connected: bool) -> None:
        with operation_context(self.name):
            logger.info(f"Push transport {'connected' if connected else 'disconnected'}")
            self._sync_channel_mode()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, parameters: dict[str, Any] | None = None) -> Operation:
        """Begin tracking a freshly started operation.

        Raises:
            OperationConflictError: If an operation of this type is starting or tracked.
                Raised before any I/O.
        """
        if self._closed:
            raise TrackerError(f"Controller for {self.name} is closed")
        if self.is_active:
            raise OperationConflictError(self.name)

        with operation_context(self.name):
            self._cancel_idle_reset()
            self._reset_state(ControllerStatus.STARTING)
            self._state.snapshot = ProgressSnapshot(phase=Phase.STARTING, message="Starting...")
            self._notify()

            parameters = dict(parameters or {})
            try:
                async with self._store_lock:
                    operation = await self.store.save(self.name, parameters)
            except Exception as e:
                # Persistence only serves restart survival; tracking goes on without it
                logger.warning(f"Failed to persist operation, tracking anyway: {e}")
                operation = Operation(type=self.name, parameters=parameters)

            if self._closed or self._state.status != ControllerStatus.STARTING:
                return operation

            self._state.operation = operation
            logger.info(f"Tracking started with parameters {sorted(parameters)}")
            self._enter_tracking()
            return operation

    async def restore_on_mount(self) -> ProgressSnapshot | None:
        """Resume tracking after a restart, if a persisted record says so.

        The record is only a hint: it is confirmed with an immediate probe.
        A probe that denies the job is running is treated as a just-missed
        completion and shown as such for the display delay.
        """
        if self._closed or self._state.status != ControllerStatus.IDLE:
            return self._state.snapshot

        with operation_context(self.name):
            async with self._store_lock:
                operation = await self.store.load(self.name)
            if operation is None or self._closed or self._state.status != ControllerStatus.IDLE:
                return self._state.snapshot

            logger.info(f"Restoring operation started at {operation.started_at.isoformat()}")
            self._reset_state(ControllerStatus.STARTING)
            self._state.operation = operation
            self._state.snapshot = self._restored_snapshot(operation)
            self._notify()

            try:
                result = await self.probe.probe()
            except Exception as e:
                if self._closed or self._state.status != ControllerStatus.STARTING:
                    return self._state.snapshot
                logger.warning(f"Restore probe failed, tracking on the stored hint: {e}")
                self._enter_tracking()
                await self._record_probe_failure(e)
                return self._state.snapshot

            if self._closed or self._state.status != ControllerStatus.STARTING:
                return self._state.snapshot

            if result.is_running:
                self._enter_tracking()
                await self._accept_probe_result(result)
            elif result.terminal_reason == "error":
                await self.finish(Outcome.FAILED, self._terminal_snapshot(result, Phase.FAILED))
            else:
                logger.info("Operation finished while we were away, showing completion")
                await self.finish(Outcome.COMPLETE, self._terminal_snapshot(result, Phase.COMPLETE))
            return self._state.snapshot

    async def on_signal(self, raw: RawStatus) -> ProgressSnapshot | None:
        """Handle one push event or poll result.

        Stale payloads (sequence not above the last accepted one) are dropped;
        payloads without sequence numbers are last-write-wins.

        Returns:
            The new snapshot, or None if the signal was ignored
        """
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            logger.debug(f"Ignoring {raw.source} signal for {self.name} ({self._state.status})")
            return None

        with operation_context(self.name):
            return await self._apply_signal(raw)

    async def _apply_signal(
        self, raw: RawStatus, stalled: bool = False
    ) -> ProgressSnapshot | None:
        """Reduce and apply one signal.

        With ``stalled`` the snapshot is shown but does not count as progress:
        the watchdog and the possibly-stalled flag are left as they are.
        """
        if raw.sequence is not None:
            last = self._state.last_sequence
            if last is not None and raw.sequence <= last:
                logger.debug(f"Dropping stale {raw.source} signal seq={raw.sequence} <= {last}")
                return None
            self._state.last_sequence = raw.sequence

        snapshot = reduce(raw)

        if snapshot.phase == Phase.COMPLETE:
            await self.finish(Outcome.COMPLETE, snapshot)
            return snapshot
        if snapshot.phase == Phase.FAILED:
            await self.finish(Outcome.FAILED, snapshot)
            return snapshot
        if raw.is_running is False:
            await self._resolve_not_running(to_probe_result(raw))
            return self._state.snapshot

        if stalled:
            self._state.snapshot = snapshot
            self._notify()
        else:
            self._accept(snapshot)
        self._schedule_persist(snapshot)
        return snapshot

    async def finish(
        self,
        outcome: Outcome,
        snapshot: ProgressSnapshot | None = None,
        notice: str | None = None,
    ) -> None:
        """Resolve the active operation and schedule the return to IDLE."""
        if self._state.status not in (ControllerStatus.STARTING, ControllerStatus.TRACKING):
            return

        with operation_context(self.name):
            self._stop_timers()
            self._state.mode = ChannelMode.RESOLVED
            self._state.status = _OUTCOME_STATUS[outcome]
            self._state.outcome = outcome
            self._state.notice = notice
            self._state.watchdog.possibly_stalled = False
            if snapshot is None and outcome == Outcome.COMPLETE:
                snapshot = ProgressSnapshot(
                    phase=Phase.COMPLETE, percent=100.0, message="Processing complete"
                )
            elif snapshot is None and outcome == Outcome.FAILED:
                snapshot = ProgressSnapshot(phase=Phase.FAILED, message="Operation failed")
            self._state.snapshot = snapshot
            logger.info(f"Operation resolved: {outcome}" + (f" ({notice})" if notice else ""))

            self._schedule_idle_reset()
            self._notify()

            await self._clear_store()

            if outcome == Outcome.COMPLETE:
                await self._emit(self.on_complete, snapshot)
            elif outcome == Outcome.FAILED:
                await self._emit(self.on_error, snapshot.message if snapshot else "Operation failed")

    def note_cancel_requested(self) -> None:
        """The backend job was asked to stop; an unconfirmed stop now reads as cancelled."""
        if self.is_active:
            self._cancel_requested = True
            logger.info(f"Cancellation requested for {self.name}")

    async def check_now(self) -> None:
        """Probe the backend immediately and apply the result."""
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            return
        try:
            result = await self.probe.probe()
        except Exception as e:
            await self._on_poll_error(e)
            return
        await self._on_poll_result(result)

    async def cancel_tracking(self) -> None:
        """Stop tracking locally. The backend job itself is left alone."""
        if self._state.status == ControllerStatus.IDLE:
            return

        with operation_context(self.name):
            was_active = self.is_active
            self._stop_timers()
            self._cancel_idle_reset()
            self._reset_state(ControllerStatus.IDLE)
            if was_active:
                self._state.outcome = Outcome.CLEARED
                self._state.notice = NOTICE_CANCELLED
                logger.info("Tracking cancelled")
            self._notify()
            await self._clear_store()

    def close(self) -> None:
        """Tear down on unmount: timers and subscriptions go, the stored record stays.

        An await still in flight in start() or restore_on_mount() sees the
        controller closed when it resumes and leaves it idle.
        """
        if self._closed:
            return
        self._closed = True
        self._stop_timers()
        self._cancel_idle_reset()
        self._reset_state(ControllerStatus.IDLE)
        self.push.close()
        logger.debug(f"Controller for {self.name} closed")

    # ------------------------------------------------------------------
    # Channel selection and timers
    # ------------------------------------------------------------------

    def _enter_tracking(self) -> None:
        if self._closed:
            return
        self._state.status = ControllerStatus.TRACKING
        self.watchdog.reset()
        self._sync_channel_mode()
        self._notify()

    def _sync_channel_mode(self) -> None:
        """Prefer push whenever connected; poll only while it is not."""
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            return
        if self.push.is_connected:
            if self._state.mode != ChannelMode.PUSH_ACTIVE:
                logger.info("Push active, poll fallback off")
            self._state.mode = ChannelMode.PUSH_ACTIVE
            self.poll.stop()
        else:
            if self._state.mode != ChannelMode.POLL_ACTIVE:
                logger.info("Push unavailable, poll fallback on")
            self._state.mode = ChannelMode.POLL_ACTIVE
            self.poll.start()
        self._notify()

    def _stop_timers(self) -> None:
        self.poll.stop()
        self.watchdog.disarm()

    def _schedule_idle_reset(self) -> None:
        self._cancel_idle_reset()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(
            self.settings.completion_display_seconds, self._reset_to_idle
        )

    def _cancel_idle_reset(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _reset_to_idle(self) -> None:
        self._idle_handle = None
        if not self._state.status.is_terminal:
            return
        outcome = self._state.outcome
        self._reset_state(ControllerStatus.IDLE)
        self._state.outcome = outcome
        self._notify()

    def _reset_state(self, status: ControllerStatus) -> None:
        self._state.status = status
        self._state.mode = ChannelMode.NO_CHANNEL
        self._state.operation = None
        self._state.snapshot = None
        self._state.outcome = None
        self._state.notice = None
        self._state.error = None
        self._state.last_sequence = None
        self._state.consecutive_probe_failures = 0
        self._last_persist_at = None
        self._pending_snapshot = None
        self._cancel_requested = False
        watchdog: WatchdogState = self._state.watchdog
        watchdog.last_signal_at = None
        watchdog.possibly_stalled = False

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _accept(self, snapshot: ProgressSnapshot) -> None:
        self._state.snapshot = snapshot
        self._state.watchdog.possibly_stalled = False
        self.watchdog.reset()
        self._notify()

    async def _accept_probe_result(self, result: ProbeResult) -> None:
        if result.raw is not None:
            await self.on_signal(replace(result.raw, source="probe"))
        elif result.snapshot is not None and not result.snapshot.is_terminal:
            self._accept(result.snapshot)

    async def _on_poll_result(self, result: ProbeResult) -> None:
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            return
        with operation_context(self.name):
            self._clear_probe_failures()
            if result.is_running:
                await self._accept_probe_result(result)
            else:
                await self._resolve_not_running(result)

    async def _on_poll_error(self, error: Exception) -> None:
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            return
        with operation_context(self.name):
            await self._record_probe_failure(error)

    async def _resolve_not_running(self, result: ProbeResult) -> None:
        """The backend says the job is not running: resolve by what it can substantiate."""
        reason = result.terminal_reason
        if reason == "complete":
            await self.finish(Outcome.COMPLETE, self._terminal_snapshot(result, Phase.COMPLETE))
        elif reason == "error":
            await self.finish(Outcome.FAILED, self._terminal_snapshot(result, Phase.FAILED))
        elif reason == "empty":
            await self.finish(Outcome.CLEARED, notice=NOTICE_NOTHING_TO_PROCESS)
        elif self._cancel_requested:
            await self.finish(Outcome.CLEARED, notice=NOTICE_CANCELLED)
        else:
            logger.warning("Job stopped without a confirmed result")
            await self.finish(Outcome.CLEARED, notice=NOTICE_TRACKING_ENDED)

    async def _on_watchdog_expired(self) -> None:
        """Force one probe after a silence longer than the watchdog bound."""
        if self._closed or self._state.status != ControllerStatus.TRACKING:
            return
        with operation_context(self.name):
            try:
                result = await self.probe.probe()
            except Exception as e:
                logger.warning(f"Forced probe failed: {e}")
                await self._record_probe_failure(e)
                if not self._closed and self._state.status == ControllerStatus.TRACKING:
                    self.watchdog.arm()
                return

            if self._closed or self._state.status != ControllerStatus.TRACKING:
                return
            self._clear_probe_failures()

            if result.is_running:
                # A silent job is not a failed job; flag it and keep watching
                self._state.watchdog.possibly_stalled = True
                logger.warning("Backend still reports the job running, marking possibly stalled")
                if result.raw is not None:
                    await self._apply_signal(replace(result.raw, source="probe"), stalled=True)
                elif result.snapshot is not None and not result.snapshot.is_terminal:
                    self._state.snapshot = result.snapshot
                if self._state.status == ControllerStatus.TRACKING:
                    self.watchdog.arm()
                    self._notify()
            else:
                logger.warning("Completion signal was lost, resolving from forced probe")
                await self._resolve_not_running(result)

    async def _record_probe_failure(self, error: Exception) -> None:
        self._state.consecutive_probe_failures += 1
        failures = self._state.consecutive_probe_failures
        if failures < self.settings.probe_retry_budget or self._state.error is not None:
            return
        unavailable = ProbeUnavailableError(self.name, failures, error)
        self._state.error = unavailable.detail
        logger.error(unavailable.detail)
        self._notify()
        await self._emit(self.on_error, unavailable.detail)

    def _clear_probe_failures(self) -> None:
        if self._state.consecutive_probe_failures or self._state.error:
            logger.info("Status probe recovered")
        self._state.consecutive_probe_failures = 0
        self._state.error = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _restored_snapshot(self, operation: Operation) -> ProgressSnapshot:
        last = operation.last_snapshot
        if last is None or last.is_terminal:
            return ProgressSnapshot(phase=Phase.STARTING, message="Reconnecting to operation...")
        return last

    def _terminal_snapshot(self, result: ProbeResult, phase: Phase) -> ProgressSnapshot:
        """Snapshot for a terminal phase built from whatever the probe returned."""
        if result.snapshot is not None and result.snapshot.phase == phase:
            return result.snapshot
        if result.raw is not None:
            status = "complete" if phase == Phase.COMPLETE else "failed"
            return reduce(replace(result.raw, status=status))
        if phase == Phase.COMPLETE:
            return ProgressSnapshot(phase=phase, percent=100.0, message="Processing complete")
        return ProgressSnapshot(phase=phase, message="Operation failed")

    def _schedule_persist(self, snapshot: ProgressSnapshot) -> None:
        """Queue a throttled last-snapshot write without holding up the signal."""
        now = time.monotonic()
        if (
            self._last_persist_at is not None
            and now - self._last_persist_at < self.settings.store_update_min_interval_seconds
        ):
            return
        self._last_persist_at = now
        self._pending_snapshot = snapshot
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.create_task(
                self._flush_snapshots(), name=f"{self.name}:persist"
            )

    async def _flush_snapshots(self) -> None:
        async with self._store_lock:
            while self._pending_snapshot is not None:
                snapshot, self._pending_snapshot = self._pending_snapshot, None
                # A resolved operation's record is gone and must stay gone
                if self._closed or self._state.status != ControllerStatus.TRACKING:
                    return
                try:
                    await self.store.update(self.name, snapshot)
                except Exception as e:
                    logger.warning(f"Failed to persist progress snapshot: {e}")

    async def _clear_store(self) -> None:
        self._pending_snapshot = None
        try:
            async with self._store_lock:
                await self.store.clear(self.name)
        except Exception as e:
            # The record expires on its own; a restore would probe it anyway
            logger.warning(f"Failed to clear persisted operation: {e}")

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            result = self.on_change(self)
        except Exception:
            logger.exception("on_change callback failed")
            return
        if inspect.isawaitable(result):
            asyncio.ensure_future(result)

    async def _emit(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Callback {getattr(callback, '__name__', callback)!r} failed")
