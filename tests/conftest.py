"""Pytest configuration and fixtures."""

from collections import defaultdict

import pytest

from optrack.config import Settings
from optrack.schemas.operation import Phase, ProbeResult, ProgressSnapshot
from optrack.services.job_types import LOG_IMPORT, get_job_type
from optrack.services.operation_controller import OperationController
from optrack.services.operation_store import InMemoryOperationStore
from optrack.services.push_channel import PushChannel


class FakeTransport:
    """In-process push transport: events and connection changes are fired by the test."""

    def __init__(self, connected: bool = True):
        self._connected = connected
        self.handlers = defaultdict(list)
        self.listeners = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def off(self, event, handler):
        self.handlers[event].remove(handler)

    def add_connection_listener(self, listener):
        self.listeners.append(listener)

    def remove_connection_listener(self, listener):
        self.listeners.remove(listener)

    def emit(self, event, payload):
        for handler in list(self.handlers[event]):
            handler(payload)

    def set_connected(self, connected: bool):
        self._connected = connected
        for listener in list(self.listeners):
            listener(connected)


class FakeProbe:
    """Scripted StatusProbe. Items are returned in order, the last one repeats.

    An Exception instance in the script is raised instead of returned.
    """

    def __init__(self, *script):
        self.script = list(script) or [running_result()]
        self.calls = 0

    async def probe(self) -> ProbeResult:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


def running_result(percent: float = 10.0) -> ProbeResult:
    return ProbeResult(
        is_running=True,
        snapshot=ProgressSnapshot(phase=Phase.RUNNING, percent=percent, message="Processing..."),
    )


@pytest.fixture
def settings():
    """Fast timers, in-memory persistence."""
    return Settings(
        store_backend="memory",
        poll_interval_seconds=0.01,
        watchdog_timeout_seconds=5.0,
        completion_display_seconds=10.0,
        store_update_min_interval_seconds=0.0,
        store_retry_base_delay_seconds=0.0,
        probe_retry_budget=3,
    )


@pytest.fixture
def store(settings):
    return InMemoryOperationStore(settings)


@pytest.fixture
def transport():
    return FakeTransport(connected=True)


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def make_controller(settings, store):
    """Build controllers and close them after the test."""
    created = []

    def _make(job_type=LOG_IMPORT, probe=None, transport=None, **kwargs):
        controller = OperationController(
            get_job_type(job_type),
            store=kwargs.pop("store", store),
            probe=probe or FakeProbe(),
            push_channel=PushChannel(transport, name=job_type),
            settings=kwargs.pop("settings", settings),
            **kwargs,
        )
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        controller.close()
