"""Interval-driven StatusProbe, active only while push is not delivering."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from optrack.schemas.operation import ProbeResult
from optrack.services.protocols import StatusProbeProtocol

logger = logging.getLogger(__name__)

ResultHandler = Callable[[ProbeResult], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


class PollFallback:
    """Single asyncio task probing every ``interval`` seconds.

    The first tick runs immediately. Probe failures are handed to
    ``on_error`` and polling continues; the next tick is the retry.
    ``stop()`` cancels the task synchronously so no probe starts afterwards.
    """

    def __init__(
        self,
        probe: StatusProbeProtocol,
        interval: float,
        on_result: ResultHandler,
        on_error: ErrorHandler,
        name: str = "poll",
    ):
        self.probe = probe
        self.interval = interval
        self.on_result = on_result
        self.on_error = on_error
        self.name = name
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling. No-op when already running."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[{self.name}] Poll fallback started (every {self.interval}s)")

    def stop(self) -> None:
        """Cancel the poll task."""
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.info(f"[{self.name}] Poll fallback stopped after {self.ticks} ticks")

    async def _run_loop(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await self._tick()
            if self._task is not me:
                break
            await asyncio.sleep(self.interval)

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            result = await self.probe.probe()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] Poll tick {self.ticks} failed: {e}")
            await self._handle(self.on_error, e)
            return
        await self._handle(self.on_result, result)

    async def _handle(self, handler, value) -> None:
        try:
            await handler(value)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{self.name}] Poll handler failed on tick {self.ticks}")
