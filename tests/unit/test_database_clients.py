"""
Unit tests for the database client health checks.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Row models register on Base when the store module is imported
import services.regulatory_truth.store.postgres  # noqa: F401
from shared.database.postgres import Base, PostgresClient
from shared.database.redis import RedisClient
from shared.models.common import HealthResponse


def session_factory(session: AsyncMock) -> MagicMock:
    @asynccontextmanager
    async def _session() -> AsyncIterator[AsyncMock]:
        yield session

    return MagicMock(side_effect=_session)


def table_rows(names: list[str]) -> MagicMock:
    result = MagicMock()
    result.all.return_value = [(name,) for name in names]
    return result


class TestPostgresHealth:
    """Tests for PostgresClient.health_check."""

    @pytest.mark.asyncio
    async def test_healthy_when_schema_complete(self, monkeypatch: pytest.MonkeyPatch) -> None:
        session = AsyncMock()
        session.execute.return_value = table_rows(list(Base.metadata.tables))
        monkeypatch.setattr(PostgresClient, "get_session_factory", classmethod(lambda cls: session_factory(session)))

        health = await PostgresClient.health_check()

        assert health["status"] == "healthy"
        assert "missing_tables" not in health

    @pytest.mark.asyncio
    async def test_degraded_when_tables_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        session = AsyncMock()
        session.execute.return_value = table_rows(["rt_evidence"])
        monkeypatch.setattr(PostgresClient, "get_session_factory", classmethod(lambda cls: session_factory(session)))

        health = await PostgresClient.health_check()

        assert health["status"] == "degraded"
        assert "rt_rules" in health["missing_tables"]
        assert "rt_evidence" not in health["missing_tables"]

    @pytest.mark.asyncio
    async def test_unhealthy_on_connection_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        session = AsyncMock()
        session.execute.side_effect = OSError("connection refused")
        monkeypatch.setattr(PostgresClient, "get_session_factory", classmethod(lambda cls: session_factory(session)))

        health = await PostgresClient.health_check()

        assert health == {"status": "unhealthy", "error": "connection refused"}


class TestRedisHealth:
    """Tests for RedisClient.health_check."""

    @pytest.fixture
    def client(self, monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
        client = AsyncMock()
        monkeypatch.setattr(RedisClient, "_client", client)
        return client

    @pytest.mark.asyncio
    async def test_reports_queue_backlog(self, client: AsyncMock) -> None:
        client.ping.return_value = True
        client.llen.side_effect = lambda key: {"rtl:queue:extractor": 3}.get(key, 0)

        health = await RedisClient.health_check(queue_keys=["rtl:queue:sentinel", "rtl:queue:extractor"])

        assert health["status"] == "healthy"
        assert health["queues"] == {"rtl:queue:sentinel": 0, "rtl:queue:extractor": 3}

    @pytest.mark.asyncio
    async def test_no_queues_without_keys(self, client: AsyncMock) -> None:
        client.ping.return_value = True

        health = await RedisClient.health_check()

        assert "queues" not in health
        client.llen.assert_not_called()

    @pytest.mark.asyncio
    async def test_unhealthy_on_redis_error(self, client: AsyncMock) -> None:
        client.ping.side_effect = RedisConnectionError("refused")

        health = await RedisClient.health_check()

        assert health["status"] == "unhealthy"
        assert health["error"] == "refused"


class TestHealthResponse:
    """Tests for HealthResponse.from_components."""

    def test_all_healthy(self) -> None:
        response = HealthResponse.from_components(
            "regulatory-truth",
            "0.1.0",
            {"store": {"status": "healthy"}, "queue": {"status": "healthy"}},
        )

        assert response.status == "healthy"

    def test_one_degraded_component(self) -> None:
        response = HealthResponse.from_components(
            "regulatory-truth",
            "0.1.0",
            {"postgres": {"status": "degraded", "missing_tables": ["rt_rules"]}, "queue": {"status": "healthy"}},
        )

        assert response.status == "degraded"
        assert response.components["postgres"]["missing_tables"] == ["rt_rules"]
