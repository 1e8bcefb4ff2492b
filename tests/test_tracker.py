"""Tests for OperationTracker: per-type controllers over a shared backend."""

import asyncio
import json

import httpx
import pytest
from conftest import FakeTransport

from optrack.core.exceptions import (
    BackendError,
    OperationConflictError,
    TrackerError,
    UnknownJobTypeError,
)
from optrack.schemas.operation import ControllerStatus, Operation
from optrack.services.backend_client import BackendClient
from optrack.services.job_types import DEPOT_SCAN, LOG_IMPORT, JobTypeSpec, get_job_type
from optrack.services.operation_controller import NOTICE_CANCELLED
from optrack.services.tracker import OperationTracker


class FakeBackend:
    """MockTransport handler recording requests, answering per path."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(200, json={"isProcessing": True, "percentComplete": 10})
        return route

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def backend():
    return FakeBackend(
        {
            ("POST", "/api/management/process-all-logs"): httpx.Response(
                200, json={"message": "Processing started", "totalSize": 4096, "mbTotal": 4.0}
            ),
            ("POST", "/api/depots/rebuild"): httpx.Response(202),
        }
    )


@pytest.fixture
def tracker(settings, store, backend):
    tracker = OperationTracker(
        settings=settings,
        client=BackendClient(settings, transport=httpx.MockTransport(backend)),
        store=store,
        transport=FakeTransport(connected=True),
    )
    yield tracker
    tracker.close()


def test_one_controller_per_registered_type(tracker):
    assert set(tracker.controllers) == {LOG_IMPORT, DEPOT_SCAN}


def test_unknown_type_rejected(tracker):
    with pytest.raises(UnknownJobTypeError):
        tracker.controller("cache-purge")


def test_restricted_job_types(settings, store):
    tracker = OperationTracker(job_types=[DEPOT_SCAN], settings=settings, store=store)
    assert list(tracker.controllers) == [DEPOT_SCAN]
    tracker.close()


@pytest.mark.asyncio
async def test_launch_merges_start_estimate(tracker, backend):
    operation = await tracker.launch(LOG_IMPORT, {"force": True})

    posts = backend.calls("POST", "/api/management/process-all-logs")
    assert len(posts) == 1
    assert json.loads(posts[0].content) == {"force": True}
    assert operation.parameters == {"force": True, "estimate": {"totalSize": 4096, "mbTotal": 4.0}}
    assert tracker.is_active(LOG_IMPORT)


@pytest.mark.asyncio
async def test_launch_without_body(tracker):
    operation = await tracker.launch(DEPOT_SCAN)
    assert operation.parameters == {}
    assert tracker.controller(DEPOT_SCAN).state == ControllerStatus.TRACKING


@pytest.mark.asyncio
async def test_launch_conflict_sends_no_request(tracker, backend):
    await tracker.launch(LOG_IMPORT)

    with pytest.raises(OperationConflictError):
        await tracker.launch(LOG_IMPORT)

    assert len(backend.calls("POST", "/api/management/process-all-logs")) == 1


@pytest.mark.asyncio
async def test_concurrent_launches_start_one_job(tracker, backend):
    results = await asyncio.gather(
        tracker.launch(LOG_IMPORT), tracker.launch(LOG_IMPORT), return_exceptions=True
    )

    assert len(backend.calls("POST", "/api/management/process-all-logs")) == 1
    assert sum(isinstance(r, Operation) for r in results) == 1
    assert sum(isinstance(r, OperationConflictError) for r in results) == 1


@pytest.mark.asyncio
async def test_start_rejected_while_launch_in_flight(tracker):
    launching = asyncio.create_task(tracker.launch(DEPOT_SCAN))
    await asyncio.sleep(0)
    assert tracker.is_active(DEPOT_SCAN)

    with pytest.raises(OperationConflictError):
        await tracker.start(DEPOT_SCAN)

    await launching
    assert tracker.controller(DEPOT_SCAN).state == ControllerStatus.TRACKING


@pytest.mark.asyncio
async def test_launch_rejected_by_backend(settings, store):
    backend = FakeBackend({("POST", "/api/depots/rebuild"): httpx.Response(409)})
    tracker = OperationTracker(
        settings=settings,
        client=BackendClient(settings, transport=httpx.MockTransport(backend)),
        store=store,
    )

    with pytest.raises(BackendError):
        await tracker.launch(DEPOT_SCAN)

    assert tracker.is_active(DEPOT_SCAN) is False
    tracker.close()


@pytest.mark.asyncio
async def test_types_are_independent(tracker):
    await tracker.start(LOG_IMPORT)
    await tracker.start(DEPOT_SCAN)

    assert tracker.is_active(LOG_IMPORT)
    assert tracker.is_active(DEPOT_SCAN)

    await tracker.cancel_tracking(LOG_IMPORT)
    assert not tracker.is_active(LOG_IMPORT)
    assert tracker.is_active(DEPOT_SCAN)


@pytest.mark.asyncio
async def test_restore_all(tracker, store):
    store.put(Operation(type=LOG_IMPORT))

    restored = await tracker.restore_all()

    assert restored[DEPOT_SCAN] is None
    assert restored[LOG_IMPORT].percent == 10.0
    assert tracker.controller(LOG_IMPORT).state == ControllerStatus.TRACKING
    assert tracker.snapshot(LOG_IMPORT).percent == 10.0


@pytest.mark.asyncio
async def test_cancel_job_resolves_once_backend_stops(settings, store):
    backend = FakeBackend(
        {
            ("POST", "/api/management/cancel-processing"): httpx.Response(
                200, json={"message": "Bulk processing cancelled"}
            ),
            ("GET", "/api/management/processing-status"): httpx.Response(
                200, json={"isProcessing": False, "percentComplete": 42, "entriesProcessed": 100}
            ),
        }
    )
    tracker = OperationTracker(
        settings=settings,
        client=BackendClient(settings, transport=httpx.MockTransport(backend)),
        store=store,
        transport=FakeTransport(connected=True),
    )
    await tracker.start(LOG_IMPORT)

    await tracker.cancel_job(LOG_IMPORT)

    controller = tracker.controller(LOG_IMPORT)
    assert len(backend.calls("POST", "/api/management/cancel-processing")) == 1
    assert controller.state == ControllerStatus.CLEARED
    assert controller.notice == NOTICE_CANCELLED
    assert await store.load(LOG_IMPORT) is None
    tracker.close()


@pytest.mark.asyncio
async def test_cancel_job_keeps_tracking_while_backend_runs(tracker, backend):
    await tracker.start(LOG_IMPORT)

    await tracker.cancel_job(LOG_IMPORT)

    assert len(backend.calls("POST", "/api/management/cancel-processing")) == 1
    assert tracker.controller(LOG_IMPORT).state == ControllerStatus.TRACKING


@pytest.mark.asyncio
async def test_cancel_job_rejected_by_backend(settings, store):
    backend = FakeBackend({("POST", "/api/management/cancel-processing"): httpx.Response(500)})
    tracker = OperationTracker(
        settings=settings,
        client=BackendClient(settings, transport=httpx.MockTransport(backend)),
        store=store,
        transport=FakeTransport(connected=True),
    )
    await tracker.start(LOG_IMPORT)

    with pytest.raises(BackendError):
        await tracker.cancel_job(LOG_IMPORT)

    assert tracker.controller(LOG_IMPORT).state == ControllerStatus.TRACKING
    tracker.close()


@pytest.mark.asyncio
async def test_cancel_job_without_endpoint(settings, store, backend):
    tracker = OperationTracker(
        job_types=[LOG_IMPORT],
        settings=settings,
        client=BackendClient(settings, transport=httpx.MockTransport(backend)),
        store=store,
    )
    controller = tracker.controller(LOG_IMPORT)
    controller.job_type = JobTypeSpec(
        name=LOG_IMPORT,
        status_path=get_job_type(LOG_IMPORT).status_path,
        start_path=get_job_type(LOG_IMPORT).start_path,
        push_adapter=get_job_type(LOG_IMPORT).push_adapter,
        poll_adapter=get_job_type(LOG_IMPORT).poll_adapter,
    )

    with pytest.raises(TrackerError, match="cannot be cancelled"):
        await tracker.cancel_job(LOG_IMPORT)

    assert backend.requests == []
    tracker.close()


@pytest.mark.asyncio
async def test_cancel_request_timeout_counts_as_sent(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = BackendClient(settings, transport=httpx.MockTransport(handler))

    await client.cancel_job("/api/management/cancel-processing")


@pytest.mark.asyncio
async def test_cancel_request_unreachable(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = BackendClient(settings, transport=httpx.MockTransport(handler))

    with pytest.raises(BackendError, match="Cannot reach backend"):
        await client.cancel_job("/api/management/cancel-processing")
