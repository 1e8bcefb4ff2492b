"""Durable record of which operation is believed to be running, per job type.

A loaded record is a hint for restoring the UI after a restart, never
ground truth: the controller always confirms it with a StatusProbe.
Every backend has a bounded retention window so a stale "in progress"
record cannot outlive the job indefinitely.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from optrack.config import Settings, get_settings
from optrack.core.exceptions import StoreError
from optrack.core.redis import get_redis_pool, invalidate_redis_pool
from optrack.schemas.operation import Operation, ProgressSnapshot
from optrack.services.backend_client import BackendClient

logger = logging.getLogger(__name__)


def _decode(job_type: str, payload: Any) -> Operation | None:
    """Validate a stored payload. Returns None for corrupt records."""
    try:
        if isinstance(payload, (str, bytes)):
            operation = Operation.model_validate_json(payload)
        else:
            operation = Operation.model_validate(payload)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Discarding corrupt operation record for {job_type}: {e}")
        return None
    if operation.type != job_type:
        logger.warning(
            f"Discarding operation record for {job_type}: stored type is {operation.type}"
        )
        return None
    return operation


class InMemoryOperationStore:
    """Process-local TTL store. Used in degraded mode and tests."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._records: dict[str, tuple[float, str]] = {}

    def _expires_at(self, job_type: str) -> float:
        return self._clock() + self.settings.ttl_minutes_for(job_type) * 60

    async def save(self, job_type: str, parameters: dict[str, Any]) -> Operation:
        operation = Operation(type=job_type, parameters=dict(parameters or {}))
        self.put(operation)
        return operation

    def put(self, operation: Operation) -> None:
        """Store an operation as-is, restarting its retention window."""
        self._records[operation.type] = (
            self._expires_at(operation.type),
            operation.model_dump_json(),
        )

    def put_raw(self, job_type: str, payload: str) -> None:
        self._records[job_type] = (self._expires_at(job_type), payload)

    async def load(self, job_type: str) -> Operation | None:
        record = self._records.get(job_type)
        if record is None:
            return None
        expires_at, payload = record
        if expires_at <= self._clock():
            del self._records[job_type]
            return None
        operation = _decode(job_type, payload)
        if operation is None:
            del self._records[job_type]
        return operation

    async def update(self, job_type: str, snapshot: ProgressSnapshot) -> None:
        operation = await self.load(job_type)
        if operation is None:
            return
        self.put(operation.model_copy(update={"last_snapshot": snapshot}))

    async def clear(self, job_type: str) -> None:
        self._records.pop(job_type, None)


class RedisOperationStore:
    """Redis-backed store: one key per job type with ``SET ... EX ttl``.

    Falls back to an in-process store when Redis is unavailable, and goes
    back to Redis once a reconnect succeeds. A failed command drops the
    pool, so the following calls use the fallback instead of timing out.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.fallback = InMemoryOperationStore(self.settings)

    def _key(self, job_type: str) -> str:
        return f"{self.settings.store_key_prefix}:{job_type}"

    def _ttl_seconds(self, job_type: str) -> int:
        return self.settings.ttl_minutes_for(job_type) * 60

    async def _pool(self):
        return await get_redis_pool(self.settings)

    async def _write(self, pool, operation: Operation, existing_only: bool = False) -> None:
        try:
            await pool.set(
                self._key(operation.type),
                operation.model_dump_json(),
                ex=self._ttl_seconds(operation.type),
                xx=existing_only,
            )
        except Exception as e:
            await invalidate_redis_pool(self.settings)
            raise StoreError(f"Failed to persist {operation.type} operation: {e}") from e

    async def save(self, job_type: str, parameters: dict[str, Any]) -> Operation:
        operation = Operation(type=job_type, parameters=dict(parameters or {}))
        pool = await self._pool()
        if pool is None:
            self.fallback.put(operation)
        else:
            await self._write(pool, operation)
        return operation

    async def _load_from(self, pool, job_type: str) -> Operation | None:
        try:
            payload = await pool.get(self._key(job_type))
        except Exception as e:
            logger.warning(f"Failed to load {job_type} operation from Redis: {e}")
            await invalidate_redis_pool(self.settings)
            return None
        if payload is None:
            return None
        operation = _decode(job_type, payload)
        if operation is None:
            await self.clear(job_type)
        return operation

    async def load(self, job_type: str) -> Operation | None:
        pool = await self._pool()
        if pool is None:
            return await self.fallback.load(job_type)
        return await self._load_from(pool, job_type)

    async def update(self, job_type: str, snapshot: ProgressSnapshot) -> None:
        pool = await self._pool()
        if pool is None:
            await self.fallback.update(job_type, snapshot)
            return
        operation = await self._load_from(pool, job_type)
        if operation is None:
            return
        # XX: a record cleared since the GET stays cleared
        await self._write(
            pool, operation.model_copy(update={"last_snapshot": snapshot}), existing_only=True
        )

    async def clear(self, job_type: str) -> None:
        await self.fallback.clear(job_type)
        pool = await self._pool()
        if pool is None:
            return
        try:
            await pool.delete(self._key(job_type))
        except Exception as e:
            await invalidate_redis_pool(self.settings)
            raise StoreError(f"Failed to clear {job_type} operation: {e}") from e


class HttpOperationStore:
    """Backend-held operation state slot (``/api/operation-state``).

    The backend enforces the retention window (``expirationMinutes``), so a
    record left behind by another client expires on its own.
    """

    BASE_PATH = "/api/operation-state"

    def __init__(self, client: BackendClient, settings: Settings | None = None):
        self.client = client
        self.settings = settings or client.settings or get_settings()

    def _path(self, job_type: str) -> str:
        return f"{self.BASE_PATH}/{job_type}"

    async def _request_with_retry(
        self, method: str, path: str, json_body: Any = None
    ) -> httpx.Response:
        """Send a request, retrying network errors and 5xx with exponential backoff.

        4xx responses are returned immediately; the caller decides.

        Raises:
            StoreError: If every attempt fails
        """
        attempts = max(self.settings.store_retry_attempts, 1)
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(method, path, json=json_body)
                if response.status_code < 500:
                    return response
                last_error = StoreError(f"HTTP {response.status_code}")
            except httpx.HTTPError as e:
                last_error = e

            if attempt < attempts - 1:
                delay = self.settings.store_retry_base_delay_seconds * (2**attempt)
                logger.warning(
                    f"{method} {path} failed (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay}s: {last_error}"
                )
                await asyncio.sleep(delay)

        raise StoreError(
            f"{method} {path} failed after {attempts} attempts: {last_error}",
            context={"path": path},
        )

    async def save(self, job_type: str, parameters: dict[str, Any]) -> Operation:
        operation = Operation(type=job_type, parameters=dict(parameters or {}))
        body = {
            "key": job_type,
            "type": job_type,
            "data": operation.model_dump(mode="json"),
            "expirationMinutes": self.settings.ttl_minutes_for(job_type),
        }
        response = await self._request_with_retry("POST", self.BASE_PATH, body)
        if response.is_error:
            raise StoreError(
                f"Failed to save {job_type} operation: {response.status_code} {response.text}"
            )
        return operation

    async def load(self, job_type: str) -> Operation | None:
        try:
            response = await self.client.request("GET", self._path(job_type))
        except httpx.HTTPError as e:
            # Restoring is best-effort; a missing hint only means nothing is restored
            logger.warning(f"Failed to load {job_type} operation state: {e}")
            return None
        if response.status_code == 404 or response.is_error or not response.content:
            return None

        try:
            body = response.json()
        except json.JSONDecodeError:
            body = None
        data = body.get("data") if isinstance(body, dict) else None

        expires_at = body.get("expiresAt") if isinstance(body, dict) else None
        if expires_at and _is_expired(expires_at):
            await self.clear(job_type)
            return None

        operation = _decode(job_type, data) if data is not None else None
        if operation is None:
            await self.clear(job_type)
        return operation

    async def update(self, job_type: str, snapshot: ProgressSnapshot) -> None:
        response = await self._request_with_retry(
            "PATCH",
            self._path(job_type),
            {"updates": {"last_snapshot": snapshot.model_dump(mode="json")}},
        )
        if response.is_error and response.status_code != 404:
            raise StoreError(f"Failed to update {job_type} operation: {response.status_code}")

    async def clear(self, job_type: str) -> None:
        response = await self._request_with_retry("DELETE", self._path(job_type))
        if response.is_error and response.status_code != 404:
            raise StoreError(f"Failed to clear {job_type} operation: {response.status_code}")


def _is_expired(expires_at: str) -> bool:
    try:
        moment = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    except ValueError:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment <= datetime.now(UTC)
