"""
Stage Workers
=============

Queue-driven worker pools for the pipeline stages.

Each ``StageWorker`` runs N asyncio tasks consuming its stage queue.
A unit of work is claimed in the store before it is handled, so two
workers never process the same record. Each run is bounded by
``run_timeout_seconds``; a run that times out keeps its claim and is
picked up later by the ``StaleClaimSweeper``.

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from services.regulatory_truth.errors import RegulatoryTruthError, StageTimeout
from services.regulatory_truth.models import (
    AgentRun,
    ExtractionStatus,
    RunStatus,
    Stage,
    WorkClaim,
    utcnow,
)
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.store.base import PipelineStore
from shared.config import settings
from shared.llm import LLMError
from shared.logging import bind_context, clear_context, get_logger


logger = get_logger(__name__)


Handler = Callable[[str, str], Awaitable[Any]]

# Claim kind -> stage that owns the work
CLAIM_STAGES: dict[str, Stage] = {
    "evidence": Stage.EXTRACTOR,
    "composition": Stage.COMPOSER,
    "rule": Stage.REVIEWER,
    "conflict": Stage.ARBITER,
    "release": Stage.RELEASER,
}


class StageWorker:
    """
    Worker pool for one stage.

    Args:
        stage: stage consumed
        handler: coroutine called with ``(subject_id, owner)``
        store: pipeline store (claims and runs)
        queue: work queue
        claim_kind: per-subject claim kind; ``None`` when the handler claims itself
        concurrency: number of concurrent tasks
        record_runs: record an ``AgentRun`` per message
    """

    def __init__(
        self,
        stage: Stage,
        handler: Handler,
        store: PipelineStore,
        queue: WorkQueue,
        claim_kind: str | None = None,
        concurrency: int | None = None,
        record_runs: bool = True,
        worker_id: str = "worker",
    ) -> None:
        self.stage = stage
        self._handler = handler
        self._store = store
        self._queue = queue
        self._claim_kind = claim_kind
        self._concurrency = concurrency or settings.pipeline.worker_concurrency
        self._record_runs = record_runs
        self._worker_id = worker_id

        self._running = False
        self._tasks: list[asyncio.Task[None]] = []

    def owner(self, index: int = 0) -> str:
        return f"{self._worker_id}:{self.stage.value}:{index}"

    async def process(self, subject_id: str, owner: str) -> bool:
        """
        Claim and handle one unit of work.

        Returns:
            True when the handler completed
        """
        if self._claim_kind is not None and not await self._store.claim(
            self._claim_kind, subject_id, owner
        ):
            logger.debug("work_already_claimed", stage=self.stage.value, subject_id=subject_id)
            return False

        run = AgentRun(stage=self.stage, subject_id=subject_id)
        if self._record_runs:
            await self._store.save_run(run)
        bind_context(stage=self.stage.value, subject_id=subject_id, run_id=run.id)

        timeout = settings.pipeline.run_timeout_seconds
        scope = asyncio.timeout(timeout)
        keep_claim = False
        try:
            async with scope:
                result = await self._handler(subject_id, owner)
        except TimeoutError:
            if not scope.expired():
                raise
            keep_claim = True
            error = StageTimeout(self.stage.value, subject_id, timeout)
            logger.error("stage_timeout", stage=self.stage.value, subject_id=subject_id, timeout=timeout)
            await self._finish(run, RunStatus.FAILED, error=error.message)
            return False
        except (RegulatoryTruthError, LLMError) as e:
            logger.warning(
                "stage_failed",
                stage=self.stage.value,
                subject_id=subject_id,
                error=str(e),
                code=getattr(e, "code", None),
            )
            await self._finish(run, RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
            return False
        finally:
            clear_context()
            if self._claim_kind is not None and not keep_claim:
                await self._store.release_claim(self._claim_kind, subject_id, owner)

        await self._finish(run, RunStatus.COMPLETED, summary=_summarize(result))
        return True

    async def _finish(
        self,
        run: AgentRun,
        status: RunStatus,
        error: str | None = None,
        summary: dict[str, Any] | None = None,
    ) -> None:
        if not self._record_runs:
            return
        run.status = status
        run.error = error
        run.output_summary = summary or {}
        run.finished_at = utcnow()
        await self._store.save_run(run)

    async def drain(self, owner: str | None = None) -> int:
        """Process the messages queued right now; returns messages handled."""
        owner = owner or self.owner()
        handled = 0
        for _ in range(await self._queue.size(self.stage)):
            subject_id = await self._queue.get(self.stage, timeout=0.01)
            if subject_id is None:
                break
            await self.process(subject_id, owner)
            handled += 1
        return handled

    async def _loop(self, index: int) -> None:
        owner = self.owner(index)
        while self._running:
            subject_id = await self._queue.get(self.stage, timeout=1.0)
            if subject_id is None:
                continue
            try:
                await self.process(subject_id, owner)
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    stage=self.stage.value,
                    subject_id=subject_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def start(self) -> None:
        self._running = True
        self._tasks = [asyncio.create_task(self._loop(i)) for i in range(self._concurrency)]
        logger.info("stage_worker_started", stage=self.stage.value, concurrency=self._concurrency)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("stage_worker_stopped", stage=self.stage.value)


def _summarize(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if hasattr(result, "model_dump"):
        dumped = result.model_dump(mode="json")
        return {k: dumped[k] for k in ("id", "status", "version") if k in dumped}
    if hasattr(result, "status"):
        status = result.status
        return {"status": getattr(status, "value", status)}
    return {"result": type(result).__name__}


# =============================================================================
# Stale claims
# =============================================================================


class StaleClaimSweeper:
    """
    Drops claims older than ``claim_timeout_seconds`` and requeues the work.

    Evidence left in PROCESSING returns to PENDING.
    """

    def __init__(self, store: PipelineStore, queue: WorkQueue) -> None:
        self._store = store
        self._queue = queue
        self._running = False

    async def sweep(self, now: datetime | None = None) -> list[WorkClaim]:
        now = now or utcnow()
        older_than = now - timedelta(seconds=settings.pipeline.claim_timeout_seconds)
        stale = await self._store.stale_claims(older_than)

        for claim in stale:
            await self._store.drop_claim(claim.kind, claim.subject_id)
            if claim.kind == "evidence":
                evidence = await self._store.get_evidence(claim.subject_id)
                if evidence.extraction_status == ExtractionStatus.PROCESSING:
                    await self._store.update_evidence(
                        claim.subject_id,
                        extraction_status=ExtractionStatus.PENDING,
                    )
            stage = CLAIM_STAGES.get(claim.kind)
            if stage is not None:
                await self._queue.put(stage, claim.subject_id)
            logger.warning(
                "stale_claim_requeued",
                kind=claim.kind,
                subject_id=claim.subject_id,
                owner=claim.owner,
                claimed_at=claim.claimed_at.isoformat(),
                stage=stage.value if stage else None,
            )
        return stale

    async def start(self) -> None:
        self._running = True
        logger.info("stale_claim_sweeper_started")
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("sweeper_loop_error", error=str(e))
            await asyncio.sleep(settings.pipeline.stale_sweep_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        logger.info("stale_claim_sweeper_stopped")
