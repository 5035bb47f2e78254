"""
Unit tests for configuration loading.
"""

import pytest
from pydantic import SecretStr

from shared.config import QueueBackend, Settings, StoreBackend, settings
from shared.config.settings import (
    CORSSettings,
    LogLevel,
    PipelineSettings,
    PostgresSettings,
    RedisSettings,
)


class TestPipelineSettings:
    """Tests for PipelineSettings."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in (
            "PIPELINE_STORE_BACKEND",
            "PIPELINE_QUEUE_BACKEND",
            "PIPELINE_REQUEST_DELAY_SECONDS",
            "PIPELINE_RUN_WORKERS",
        ):
            monkeypatch.delenv(name, raising=False)

        config = PipelineSettings()

        assert config.store_backend == StoreBackend.MEMORY
        assert config.queue_backend == QueueBackend.MEMORY
        assert config.endpoint_error_threshold == 5
        assert config.confidence_floor == 0.6
        assert config.auto_approve_min_confidence == 0.9
        assert config.auto_approver_id == "AUTO_APPROVE_SYSTEM"
        assert config.allow_legacy_t0_t1_auto_approval is False
        assert config.run_workers is True

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PIPELINE_STORE_BACKEND", "postgres")
        monkeypatch.setenv("PIPELINE_QUEUE_BACKEND", "redis")
        monkeypatch.setenv("PIPELINE_ENDPOINT_ERROR_THRESHOLD", "8")
        monkeypatch.setenv("PIPELINE_ENDPOINTS_FILE", "/etc/regtruth/endpoints.json")

        config = PipelineSettings()

        assert config.store_backend == StoreBackend.POSTGRES
        assert config.queue_backend == QueueBackend.REDIS
        assert config.endpoint_error_threshold == 8
        assert str(config.endpoints_file) == "/etc/regtruth/endpoints.json"

    def test_test_environment(self) -> None:
        assert settings.is_testing
        assert settings.pipeline.run_workers is False
        assert settings.pipeline.request_delay_seconds == 0


class TestSettings:
    """Tests for the root Settings model."""

    def test_log_level_uppercased(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "debug")

        assert Settings(_env_file=None).log_level == LogLevel.DEBUG

    def test_postgres_urls(self) -> None:
        config = PostgresSettings(host="db", port=5433, user="rt", password=SecretStr("pw"), db="truth")

        assert config.async_url == "postgresql+asyncpg://rt:pw@db:5433/truth"
        assert config.sync_url == "postgresql://rt:pw@db:5433/truth"

    def test_redis_url_and_prefix(self) -> None:
        config = RedisSettings(host="cache", password=SecretStr("pw"), db=2)

        assert config.url == "redis://:pw@cache:6379/2"
        assert config.queue_prefix == "rtl:queue"

    def test_cors_origins_list(self) -> None:
        config = CORSSettings(origins="https://a.hr, https://b.hr,")

        assert config.origins_list == ["https://a.hr", "https://b.hr"]
