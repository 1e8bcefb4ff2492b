# Services package

from optrack.services.adapters import PollPayload, PushPayload
from optrack.services.backend_client import BackendClient
from optrack.services.factory import create_operation_store
from optrack.services.job_types import (
    DEPOT_SCAN,
    LOG_IMPORT,
    JobTypeSpec,
    get_job_type,
    register_job_type,
)
from optrack.services.operation_controller import OperationController
from optrack.services.operation_store import (
    HttpOperationStore,
    InMemoryOperationStore,
    RedisOperationStore,
)
from optrack.services.poll_fallback import PollFallback
from optrack.services.progress_reducer import format_progress_detail, reduce
from optrack.services.push_channel import PushChannel
from optrack.services.status_probe import HttpStatusProbe
from optrack.services.tracker import OperationTracker
from optrack.services.watchdog import Watchdog
