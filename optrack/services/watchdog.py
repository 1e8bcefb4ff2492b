"""Stall detection for the active operation."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from optrack.schemas.operation import WatchdogState

logger = logging.getLogger(__name__)


class Watchdog:
    """One ``loop.call_later`` timer, re-armed on every accepted signal.

    On expiry ``on_expire`` runs as a task (the controller forces a probe
    there). The watchdog never declares failure by itself.
    """

    def __init__(
        self,
        timeout: float,
        on_expire: Callable[[], Awaitable[None]],
        state: WatchdogState | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "watchdog",
    ):
        self.timeout = timeout
        self.on_expire = on_expire
        self.state = state or WatchdogState()
        self.name = name
        self._clock = clock
        self._handle: asyncio.TimerHandle | None = None
        self._expiry_task: asyncio.Task | None = None

    @property
    def armed(self) -> bool:
        return self.state.armed

    def reset(self) -> None:
        """Record a signal and (re)arm the timer."""
        self.state.last_signal_at = self._clock()
        self.arm()

    def arm(self) -> None:
        """Start the countdown without recording a signal."""
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._expire)
        self.state.armed = True

    def disarm(self) -> None:
        """Cancel the timer and any expiry handling in flight."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        task, self._expiry_task = self._expiry_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self.state.armed = False

    def silence_seconds(self) -> float | None:
        if self.state.last_signal_at is None:
            return None
        return self._clock() - self.state.last_signal_at

    def _expire(self) -> None:
        self._handle = None
        self.state.armed = False
        self.state.expiries += 1
        silence = self.silence_seconds()
        logger.warning(
            f"[{self.name}] No progress signal for "
            f"{round(silence) if silence is not None else '?'}s, forcing status probe"
        )
        self._expiry_task = asyncio.create_task(self._run_expiry())

    async def _run_expiry(self) -> None:
        try:
            await self.on_expire()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{self.name}] Expiry handler failed")
        finally:
            if self._expiry_task is asyncio.current_task():
                self._expiry_task = None
