"""
Sentinel
========

Polls due discovery endpoints, records newly listed documents as
pending items, fetches each pending item and commits it to the
Evidence Store.

Re-running against unchanged sources creates no new evidence: listed
URLs already known are not re-inserted, and refetched content that
hashes the same is linked to the existing evidence record.

Version: 0.1.0
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from services.regulatory_truth.errors import DuplicateEvidence, FetchError
from services.regulatory_truth.evidence import EvidenceStore
from services.regulatory_truth.models import (
    DiscoveredItem,
    DiscoveredItemStatus,
    DiscoveryEndpoint,
    ListingStrategy,
    Stage,
    utcnow,
)
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.registry import EndpointRegistry, derive_authority
from services.regulatory_truth.retry import RateLimiter
from services.regulatory_truth.sentinel.fetchers import (
    ContentFetcher,
    ListingFetcher,
    build_fetchers,
    create_http_client,
)
from services.regulatory_truth.store.base import PipelineStore
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)

MAX_ITEM_FETCH_ATTEMPTS = 3


@dataclass
class EndpointReport:
    endpoint_id: str
    listed: int = 0
    new_items: int = 0
    fetched: int = 0
    duplicates: int = 0
    failed: int = 0
    evidence_ids: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class SentinelReport:
    endpoints: list[EndpointReport] = field(default_factory=list)

    @property
    def evidence_created(self) -> int:
        return sum(len(r.evidence_ids) for r in self.endpoints)

    @property
    def new_items(self) -> int:
        return sum(r.new_items for r in self.endpoints)


class Sentinel:
    """
    Discovery and evidence capture.

    Args:
        store: pipeline store
        queue: receives new evidence ids for the Extractor
        client: shared HTTP client (created from settings when omitted)
        fetchers: listing fetchers by strategy (built on ``client`` when omitted)
        clock: current-time source
    """

    def __init__(
        self,
        store: PipelineStore,
        queue: WorkQueue | None = None,
        client: httpx.AsyncClient | None = None,
        fetchers: dict[ListingStrategy, ListingFetcher] | None = None,
        content_fetcher: ContentFetcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._owns_client = client is None
        self._client = client or create_http_client()
        limiter = RateLimiter(settings.pipeline.request_delay_seconds)
        self._fetchers = fetchers or build_fetchers(self._client, limiter)
        self._content = content_fetcher or ContentFetcher(self._client, limiter)
        self._evidence = EvidenceStore(store)
        self._registry = EndpointRegistry(store)
        self._clock = clock

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def run(self) -> SentinelReport:
        """Check every due endpoint once."""
        now = self._clock()
        due = await self._registry.due(now)
        logger.info("sentinel_run_started", due_endpoints=len(due))

        report = SentinelReport()
        for endpoint in due:
            report.endpoints.append(await self.check_endpoint(endpoint))

        logger.info(
            "sentinel_run_completed",
            endpoints=len(report.endpoints),
            new_items=report.new_items,
            evidence_created=report.evidence_created,
        )
        return report

    async def check_endpoint(self, endpoint: DiscoveryEndpoint) -> EndpointReport:
        """List, record new items and fetch pending items for one endpoint."""
        report = EndpointReport(endpoint_id=endpoint.id)
        fetcher = self._fetchers[endpoint.listing_strategy]

        try:
            entries = await fetcher.discover(endpoint)
        except FetchError as e:
            report.error = e.message
            await self._registry.record_failure(endpoint, e.message, self._clock())
            return report

        report.listed = len(entries)
        for entry in entries:
            item = DiscoveredItem(
                endpoint_id=endpoint.id,
                url=entry.url,
                title=entry.title,
                published_at=entry.published_at,
            )
            if await self._store.add_item_if_new(item):
                report.new_items += 1

        pending = await self._store.list_items(
            endpoint_id=endpoint.id,
            status=DiscoveredItemStatus.PENDING,
        )
        for item in pending:
            await self._fetch_item(endpoint, item, report)

        if pending and report.failed == len(pending):
            await self._registry.record_failure(
                endpoint,
                f"all {report.failed} item fetches failed",
                self._clock(),
            )
        else:
            await self._registry.record_success(endpoint, self._clock())

        logger.info(
            "endpoint_checked",
            endpoint_id=endpoint.id,
            listed=report.listed,
            new_items=report.new_items,
            fetched=report.fetched,
            duplicates=report.duplicates,
            failed=report.failed,
        )
        return report

    async def _fetch_item(
        self,
        endpoint: DiscoveryEndpoint,
        item: DiscoveredItem,
        report: EndpointReport,
    ) -> None:
        item.fetch_attempts += 1
        try:
            fetched = await self._content.fetch(item.url)
        except FetchError as e:
            item.error = e.message
            if item.fetch_attempts >= MAX_ITEM_FETCH_ATTEMPTS:
                item.status = DiscoveredItemStatus.FAILED
            report.failed += 1
            await self._store.save_item(item)
            logger.warning(
                "item_fetch_failed",
                item_id=item.id,
                url=item.url,
                attempts=item.fetch_attempts,
                error=e.message,
            )
            return

        try:
            evidence = await self._evidence.put(
                item.url,
                fetched.content,
                fetched.content_type,
                published_at=item.published_at,
                endpoint_id=endpoint.id,
                authority_hint=derive_authority(item.url, endpoint.authority_hint),
                metadata={"title": item.title} if item.title else None,
            )
        except DuplicateEvidence as e:
            item.evidence_id = e.existing.id
            report.duplicates += 1
            logger.debug("evidence_unchanged", item_id=item.id, evidence_id=e.existing.id)
        else:
            item.evidence_id = evidence.id
            report.evidence_ids.append(evidence.id)
            if self._queue is not None:
                await self._queue.put(Stage.EXTRACTOR, evidence.id)

        item.status = DiscoveredItemStatus.FETCHED
        item.error = None
        report.fetched += 1
        await self._store.save_item(item)
