"""Tests for settings and job type defaults."""

from unittest.mock import MagicMock

import pytest

from optrack.config import Settings
from optrack.services.factory import create_operation_store
from optrack.services.operation_store import (
    HttpOperationStore,
    InMemoryOperationStore,
    RedisOperationStore,
)


class TestSettingsDefaults:
    def test_tracking_defaults(self):
        settings = Settings()
        assert settings.poll_interval_seconds == 3.0
        assert settings.watchdog_timeout_seconds == 300.0
        assert settings.completion_display_seconds == 3.0
        assert settings.store_backend == "http"

    def test_redis_reconnect_defaults(self):
        settings = Settings()
        assert settings.redis_connect_timeout_seconds == 2.0
        assert settings.redis_retry_interval_seconds == 30.0

    def test_job_type_ttls(self):
        settings = Settings()
        assert settings.ttl_minutes_for("log-import") == 120
        assert settings.ttl_minutes_for("depot-scan") == 30

    def test_unknown_type_uses_default_ttl(self):
        settings = Settings(default_ttl_minutes=45)
        assert settings.ttl_minutes_for("cache-purge") == 45

    def test_explicit_ttl_wins(self):
        settings = Settings(log_import_ttl_minutes=15)
        assert settings.ttl_minutes_for("log-import") == 15

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("OPTRACK_POLL_INTERVAL_SECONDS", "7.5")
        monkeypatch.setenv("OPTRACK_DEPOT_SCAN_TTL_MINUTES", "10")
        settings = Settings()
        assert settings.poll_interval_seconds == 7.5
        assert settings.ttl_minutes_for("depot-scan") == 10


class TestStoreFactory:
    def test_memory(self, settings):
        assert isinstance(create_operation_store(settings), InMemoryOperationStore)

    def test_redis(self, settings):
        settings = settings.model_copy(update={"store_backend": "redis"})
        assert isinstance(create_operation_store(settings), RedisOperationStore)

    def test_http(self, settings):
        settings = settings.model_copy(update={"store_backend": "http"})
        store = create_operation_store(settings)
        assert isinstance(store, HttpOperationStore)
        assert store.client.settings is settings

    def test_unknown_backend(self):
        settings = MagicMock()
        settings.store_backend = "sqlite"
        with pytest.raises(ValueError, match="Unknown store_backend"):
            create_operation_store(settings)
