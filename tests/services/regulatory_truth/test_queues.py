"""
Tests for Stage Work Queues
===========================

Version: 0.1.0
"""

from unittest.mock import AsyncMock

import pytest

from services.regulatory_truth.models import Stage
from services.regulatory_truth.queues import (
    InMemoryWorkQueue,
    RedisWorkQueue,
    create_queue,
)
from shared.config import QueueBackend


class TestInMemoryWorkQueue:
    """Tests for InMemoryWorkQueue."""

    @pytest.mark.asyncio
    async def test_fifo_per_stage(self, work_queue: InMemoryWorkQueue) -> None:
        await work_queue.put_many(Stage.EXTRACTOR, ["ev_1", "ev_2"])
        await work_queue.put(Stage.REVIEWER, "rule_1")

        assert await work_queue.size(Stage.EXTRACTOR) == 2
        assert await work_queue.get(Stage.EXTRACTOR, timeout=0.01) == "ev_1"
        assert await work_queue.get(Stage.EXTRACTOR, timeout=0.01) == "ev_2"
        assert await work_queue.get(Stage.REVIEWER, timeout=0.01) == "rule_1"

    @pytest.mark.asyncio
    async def test_get_times_out(self, work_queue: InMemoryWorkQueue) -> None:
        assert await work_queue.get(Stage.ARBITER, timeout=0.01) is None


class TestRedisWorkQueue:
    """Tests for RedisWorkQueue against a mocked client."""

    @pytest.fixture
    def client(self) -> AsyncMock:
        return AsyncMock()

    @pytest.mark.asyncio
    async def test_put_pushes_to_stage_list(self, client: AsyncMock) -> None:
        queue = RedisWorkQueue(client, prefix="test:queue")

        await queue.put(Stage.COMPOSER, "ev_1")

        client.lpush.assert_awaited_once_with("test:queue:composer", "ev_1")

    @pytest.mark.asyncio
    async def test_get_pops_from_tail(self, client: AsyncMock) -> None:
        client.brpop.return_value = (b"test:queue:reviewer", b"rule_1")
        queue = RedisWorkQueue(client, prefix="test:queue")

        assert await queue.get(Stage.REVIEWER, timeout=2.0) == "rule_1"
        client.brpop.assert_awaited_once_with(["test:queue:reviewer"], timeout=2.0)

    @pytest.mark.asyncio
    async def test_get_decoded_and_empty(self, client: AsyncMock) -> None:
        queue = RedisWorkQueue(client, prefix="test:queue")

        client.brpop.return_value = ("test:queue:arbiter", "cf_1")
        assert await queue.get(Stage.ARBITER) == "cf_1"

        client.brpop.return_value = None
        assert await queue.get(Stage.ARBITER) is None

    @pytest.mark.asyncio
    async def test_size(self, client: AsyncMock) -> None:
        client.llen.return_value = 3
        queue = RedisWorkQueue(client, prefix="test:queue")

        assert await queue.size(Stage.RELEASER) == 3
        client.llen.assert_awaited_once_with("test:queue:releaser")

    def test_default_prefix(self, client: AsyncMock) -> None:
        assert RedisWorkQueue(client).key(Stage.SENTINEL) == "rtl:queue:sentinel"


class TestCreateQueue:
    """Tests for create_queue."""

    def test_memory(self) -> None:
        assert isinstance(create_queue(QueueBackend.MEMORY), InMemoryWorkQueue)

    def test_redis(self) -> None:
        assert isinstance(create_queue(QueueBackend.REDIS), RedisWorkQueue)
