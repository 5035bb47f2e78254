"""
Pipeline Wiring
===============

Builds the stage agents on one store and one work queue and runs them
as worker pools.

Usage:
    pipeline = Pipeline()
    await pipeline.start()       # long-running workers
    ...
    await pipeline.stop()

    await pipeline.run_once()    # one pass over all stages until queues drain

Version: 0.1.0
"""

import asyncio
import os
import socket

import httpx

from services.regulatory_truth.agents import (
    Arbiter,
    Composer,
    Extractor,
    Releaser,
    ReleaseSummarizer,
    Reviewer,
    RuleDrafter,
)
from services.regulatory_truth.agents.composer import COMPOSITION_CLAIM
from services.regulatory_truth.agents.releaser import RELEASE_CLAIM
from services.regulatory_truth.audit import IntegrityAuditor
from services.regulatory_truth.errors import ClaimError, EmptyRelease
from services.regulatory_truth.evaluation import RuleEvaluator
from services.regulatory_truth.models import ConflictStatus, ExtractionStatus, RuleRelease, RuleStatus, Stage
from services.regulatory_truth.queues import WorkQueue, create_queue
from services.regulatory_truth.registry import EndpointRegistry, configured_endpoints
from services.regulatory_truth.sentinel import Sentinel, SentinelReport
from services.regulatory_truth.store import PipelineStore, create_store
from services.regulatory_truth.workers import Handler, StageWorker, StaleClaimSweeper
from shared.config import settings
from shared.llm import LLMProvider
from shared.logging import get_logger


logger = get_logger(__name__)


SENTINEL_CLAIM = ("sentinel", "run")

STAGE_ORDER = (Stage.EXTRACTOR, Stage.COMPOSER, Stage.REVIEWER, Stage.ARBITER, Stage.RELEASER)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Pipeline:
    """
    All stages on a shared store and queue.

    Args:
        store: pipeline store (configured backend when omitted)
        queue: work queue (configured backend when omitted)
        provider: LLM provider for extraction, drafting and summaries
        http_client: HTTP client for the Sentinel
        worker_id: prefix for claim owners
    """

    def __init__(
        self,
        store: PipelineStore | None = None,
        queue: WorkQueue | None = None,
        provider: LLMProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store or create_store()
        self.queue = queue or create_queue()
        self.worker_id = worker_id or default_worker_id()

        pipeline = settings.pipeline
        self.registry = EndpointRegistry(self.store)
        self.sentinel = Sentinel(self.store, self.queue, client=http_client)
        self.extractor = Extractor(self.store, self.queue, provider=provider)
        self.composer = Composer(
            self.store,
            self.queue,
            drafter=RuleDrafter(provider) if pipeline.model_drafting else None,
        )
        self.reviewer = Reviewer(self.store, self.queue)
        self.arbiter = Arbiter(self.store, self.queue)
        self.releaser = Releaser(
            self.store,
            summarizer=ReleaseSummarizer(provider) if pipeline.release_summaries else None,
            queue=self.queue,
            owner=f"{self.worker_id}:releaser",
        )
        self.evaluator = RuleEvaluator(self.store)
        self.auditor = IntegrityAuditor(self.store)
        self.sweeper = StaleClaimSweeper(self.store, self.queue)

        def worker(
            stage: Stage,
            handler: Handler,
            claim_kind: str | None = None,
            record_runs: bool = True,
        ) -> StageWorker:
            return StageWorker(
                stage,
                handler,
                self.store,
                self.queue,
                claim_kind=claim_kind,
                record_runs=record_runs,
                worker_id=self.worker_id,
            )

        self.workers: dict[Stage, StageWorker] = {
            Stage.EXTRACTOR: worker(
                Stage.EXTRACTOR,
                lambda subject_id, owner: self.extractor.extract(subject_id),
                claim_kind="evidence",
                record_runs=False,
            ),
            Stage.COMPOSER: worker(Stage.COMPOSER, lambda subject_id, owner: self.composer.run(owner)),
            Stage.REVIEWER: worker(
                Stage.REVIEWER,
                lambda subject_id, owner: self.reviewer.review(subject_id),
                claim_kind="rule",
            ),
            Stage.ARBITER: worker(
                Stage.ARBITER,
                lambda subject_id, owner: self.arbiter.arbitrate(subject_id),
                claim_kind="conflict",
            ),
            Stage.RELEASER: worker(Stage.RELEASER, self._release),
        }

        self._running = False
        self._background: list[asyncio.Task[None]] = []

    # =========================================================================
    # Stage handlers
    # =========================================================================

    async def _release(self, subject_id: str, owner: str) -> RuleRelease | None:
        try:
            return await self.releaser.publish(owner=owner)
        except EmptyRelease:
            logger.debug("release_nothing_to_publish", trigger=subject_id)
            return None
        except ClaimError:
            logger.info("release_in_progress", trigger=subject_id)
            await self.queue.put(Stage.RELEASER, subject_id)
            return None

    async def run_sentinel(self) -> SentinelReport | None:
        """One discovery pass under the global sentinel claim."""
        kind, subject = SENTINEL_CLAIM
        owner = f"{self.worker_id}:sentinel"
        if not await self.store.claim(kind, subject, owner):
            logger.debug("sentinel_claim_held")
            return None
        try:
            return await self.sentinel.run()
        finally:
            await self.store.release_claim(kind, subject, owner)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def seed(self) -> None:
        """Register configured endpoints not yet in the store."""
        await self.registry.seed(configured_endpoints())

    async def backfill(self) -> dict[str, int]:
        """Queue work found in the store (after a restart or a queue flush)."""
        counts: dict[str, int] = {}

        pending = await self.store.list_evidence(ExtractionStatus.PENDING)
        await self.queue.put_many(Stage.EXTRACTOR, [ev.id for ev in pending])
        counts["evidence"] = len(pending)

        ungrouped = await self.store.list_pointers(ungrouped_only=True)
        if ungrouped:
            await self.queue.put(Stage.COMPOSER, COMPOSITION_CLAIM[1])
        counts["pointers"] = len(ungrouped)

        reviewable = [
            rule
            for rule in await self.store.list_rules(statuses=[RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW])
            if not rule.conflict_hold
            and rule.validation_failures < settings.pipeline.max_validation_failures
        ]
        await self.queue.put_many(Stage.REVIEWER, [rule.id for rule in reviewable])
        counts["rules"] = len(reviewable)

        conflicts = await self.store.list_conflicts(status=ConflictStatus.OPEN)
        await self.queue.put_many(Stage.ARBITER, [c.id for c in conflicts])
        counts["conflicts"] = len(conflicts)

        if await self.store.approved_unpublished_snapshot():
            await self.queue.put(Stage.RELEASER, RELEASE_CLAIM[1])

        logger.info("pipeline_backfilled", **counts)
        return counts

    async def run_once(self, discover: bool = True, max_passes: int = 10) -> int:
        """
        Run discovery once, then drain every stage queue in stage order
        until a full pass handles nothing.

        Returns:
            messages handled
        """
        if discover:
            await self.run_sentinel()
        await self.backfill()

        total = 0
        for _ in range(max_passes):
            handled = 0
            for stage in STAGE_ORDER:
                handled += await self.workers[stage].drain()
            total += handled
            if handled == 0:
                break
        logger.info("pipeline_pass_completed", handled=total)
        return total

    async def _sentinel_loop(self) -> None:
        while self._running:
            try:
                await self.run_sentinel()
            except Exception as e:
                logger.error("sentinel_loop_error", error=str(e))
            await asyncio.sleep(settings.pipeline.sentinel_interval_seconds)

    async def start(self) -> None:
        self._running = True
        await self.seed()
        await self.backfill()
        for stage_worker in self.workers.values():
            await stage_worker.start()
        self._background = [
            asyncio.create_task(self._sentinel_loop()),
            asyncio.create_task(self.sweeper.start()),
        ]
        logger.info("pipeline_started", worker_id=self.worker_id)

    async def stop(self) -> None:
        self._running = False
        await self.sweeper.stop()
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        for stage_worker in self.workers.values():
            await stage_worker.stop()
        await self.sentinel.close()
        await self.queue.close()
        logger.info("pipeline_stopped", worker_id=self.worker_id)
