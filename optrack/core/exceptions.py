"""Custom exceptions for the operation tracker."""


# -----------------------------------------------------------------------------
# Tracker Base Error
# -----------------------------------------------------------------------------


class TrackerError(Exception):
    """Base tracker error.

    All tracker exceptions inherit from this class, allowing callers to
    catch every tracker failure with a single handler.
    """

    def __init__(self, detail: str = "Operation tracking failed", context: dict | None = None):
        self.detail = detail
        self.context = context
        super().__init__(self.detail)


class UnknownJobTypeError(TrackerError):
    """Job type has no registered JobTypeSpec."""

    pass


# -----------------------------------------------------------------------------
# Controller Exceptions
# -----------------------------------------------------------------------------


class OperationConflictError(TrackerError):
    """An operation of the same type is already starting or being tracked.

    Raised synchronously from start() before any I/O is attempted.
    """

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(
            f"An operation of type '{job_type}' is already in progress",
            context={"job_type": job_type},
        )


# -----------------------------------------------------------------------------
# Probe Exceptions
# -----------------------------------------------------------------------------


class ProbeError(TrackerError):
    """Status probe request failed (transient).

    Causes:
        - Backend unreachable or timed out
        - Status endpoint returned a non-2xx response
        - Response body was not valid JSON

    Retried implicitly by the next poll tick.
    """

    pass


class ProbeUnavailableError(ProbeError):
    """Status probe kept failing beyond the retry budget.

    Surfaced to the rendering layer as an explicit error message.
    """

    def __init__(self, job_type: str, failures: int, last_error: Exception | None = None):
        self.job_type = job_type
        self.failures = failures
        self.last_error = last_error
        super().__init__(
            f"Status for '{job_type}' unavailable after {failures} attempts: {last_error}",
            context={"job_type": job_type, "failures": failures},
        )


# -----------------------------------------------------------------------------
# Backend Exceptions
# -----------------------------------------------------------------------------


class BackendError(TrackerError):
    """Backend request (start-job, operation state slot) failed."""

    pass


class StoreError(TrackerError):
    """Operation persistence backend failed.

    Causes:
        - Operation state endpoint unavailable after retries
        - Redis command failed
    """

    pass
