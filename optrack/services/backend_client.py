"""Async HTTP client for the job backend (status, start-job, operation state)."""

import logging
from typing import Any

import httpx

from optrack.config import Settings, get_settings
from optrack.core.exceptions import BackendError, ProbeError

logger = logging.getLogger(__name__)


class BackendClient:
    """Thin httpx wrapper. One short-lived AsyncClient per request.

    Args:
        settings: Optional settings override (uses get_settings() if None)
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_base_url.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        """Build headers with Bearer token if configured."""
        headers = {"Content-Type": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.settings.api_timeout_seconds,
            headers=self._headers(),
            transport=self._transport,
        )

    async def request(
        self, method: str, path: str, json: Any = None, params: dict | None = None
    ) -> httpx.Response:
        """Send a request and return the raw response (no status check)."""
        async with self._client() as client:
            return await client.request(method, path, json=json, params=params)

    async def get_status(self, path: str) -> dict[str, Any]:
        """Fetch a job status document.

        Raises:
            ProbeError: If the backend is unreachable, errors, or returns non-JSON
        """
        try:
            response = await self.request("GET", path)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ProbeError(f"Status request timed out: {path}") from e
        except httpx.HTTPStatusError as e:
            raise ProbeError(
                f"Status endpoint returned {e.response.status_code}: {path}",
                context={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProbeError(f"Cannot reach status endpoint {path}: {e}") from e
        except ValueError as e:
            raise ProbeError(f"Status endpoint returned invalid JSON: {path}") from e

        if not isinstance(data, dict):
            raise ProbeError(f"Status endpoint returned {type(data).__name__}, expected object")
        return data

    async def start_job(self, path: str, parameters: dict[str, Any]) -> dict[str, Any] | None:
        """Trigger a backend job.

        Returns:
            The response body when it is a JSON object (may hold an initial estimate)

        Raises:
            BackendError: If the backend rejects the request or is unreachable
        """
        try:
            response = await self.request("POST", path, json=parameters or None)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Start request rejected: {path} ({e.response.status_code})")
            raise BackendError(
                f"Failed to start job: {e.response.status_code}",
                context={"status_code": e.response.status_code, "path": path},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Cannot reach backend for {path}: {e}")
            raise BackendError(f"Cannot reach backend: {e}", context={"path": path}) from e

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    async def cancel_job(self, path: str) -> None:
        """Ask the backend to stop a running job.

        The cancel endpoints return as soon as the stop is initiated, so a
        timeout means the request got there and is not an error.

        Raises:
            BackendError: If the backend rejects the request or is unreachable
        """
        try:
            response = await self.request("POST", path)
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning(f"Cancel request timed out, assuming it was accepted: {path}")
        except httpx.HTTPStatusError as e:
            logger.error(f"Cancel request rejected: {path} ({e.response.status_code})")
            raise BackendError(
                f"Failed to cancel job: {e.response.status_code}",
                context={"status_code": e.response.status_code, "path": path},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Cannot reach backend for {path}: {e}")
            raise BackendError(f"Cannot reach backend: {e}", context={"path": path}) from e
