"""
Stage Work Queues
=================

Message passing between pipeline stages. A message is the id of the
unit of work for the receiving stage (evidence id for the Extractor,
rule id for the Reviewer, conflict id for the Arbiter and so on).
Messages carry no state; workers read everything from the store.

Version: 0.1.0
"""

import asyncio
from abc import ABC, abstractmethod

from redis.asyncio import Redis

from services.regulatory_truth.models import Stage
from shared.config import QueueBackend, settings
from shared.database.redis import RedisClient
from shared.logging import get_logger


logger = get_logger(__name__)


class WorkQueue(ABC):
    """Per-stage FIFO of subject ids."""

    @abstractmethod
    async def put(self, stage: Stage, subject_id: str) -> None: ...

    @abstractmethod
    async def get(self, stage: Stage, timeout: float = 1.0) -> str | None:
        """Next subject id, or None when nothing arrived within ``timeout``."""

    @abstractmethod
    async def size(self, stage: Stage) -> int: ...

    async def put_many(self, stage: Stage, subject_ids: list[str]) -> None:
        for subject_id in subject_ids:
            await self.put(stage, subject_id)

    async def close(self) -> None:
        return None


class InMemoryWorkQueue(WorkQueue):
    """asyncio queues for a single-process deployment and tests."""

    def __init__(self) -> None:
        self._queues: dict[Stage, asyncio.Queue[str]] = {stage: asyncio.Queue() for stage in Stage}

    async def put(self, stage: Stage, subject_id: str) -> None:
        await self._queues[stage].put(subject_id)
        logger.debug("work_enqueued", stage=stage.value, subject_id=subject_id)

    async def get(self, stage: Stage, timeout: float = 1.0) -> str | None:
        try:
            return await asyncio.wait_for(self._queues[stage].get(), timeout)
        except TimeoutError:
            return None

    async def size(self, stage: Stage) -> int:
        return self._queues[stage].qsize()


class RedisWorkQueue(WorkQueue):
    """Redis lists, one per stage: LPUSH to enqueue, BRPOP to consume."""

    def __init__(self, client: Redis | None = None, prefix: str | None = None) -> None:  # type: ignore[type-arg]
        self._client = client
        self._prefix = prefix or settings.redis.queue_prefix

    @property
    def client(self) -> Redis:  # type: ignore[type-arg]
        if self._client is None:
            self._client = RedisClient.get_client()
        return self._client

    def key(self, stage: Stage) -> str:
        return f"{self._prefix}:{stage.value}"

    async def put(self, stage: Stage, subject_id: str) -> None:
        await self.client.lpush(self.key(stage), subject_id)
        logger.debug("work_enqueued", stage=stage.value, subject_id=subject_id, backend="redis")

    async def get(self, stage: Stage, timeout: float = 1.0) -> str | None:
        result = await self.client.brpop([self.key(stage)], timeout=timeout)
        if result is None:
            return None
        _, subject_id = result
        return subject_id.decode() if isinstance(subject_id, bytes) else subject_id

    async def size(self, stage: Stage) -> int:
        return await self.client.llen(self.key(stage))


def create_queue(backend: QueueBackend | None = None) -> WorkQueue:
    backend = backend or settings.pipeline.queue_backend
    if backend == QueueBackend.REDIS:
        return RedisWorkQueue()
    return InMemoryWorkQueue()
