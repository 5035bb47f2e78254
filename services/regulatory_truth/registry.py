"""
Discovery Endpoint Registry
===========================

Configured sources to poll, their scheduling and health bookkeeping,
and authority derivation from where a document was published.

Endpoints come from a JSON file (``PIPELINE_ENDPOINTS_FILE``) holding a
list of ``DiscoveryEndpoint`` objects, or from the built-in defaults.

Version: 0.1.0
"""

import json
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import urlparse

from pydantic import TypeAdapter, ValidationError

from services.regulatory_truth.models import (
    AuthorityLevel,
    DiscoveryEndpoint,
    EndpointMetadata,
    EndpointPriority,
    ListingStrategy,
    ScrapeFrequency,
)
from services.regulatory_truth.store.base import PipelineStore
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


# Issuing body by host. Official gazette is law, tax administration and
# ministries issue guidance, agencies publish procedure.
HOST_AUTHORITY: dict[str, AuthorityLevel] = {
    "narodne-novine.nn.hr": AuthorityLevel.LAW,
    "porezna-uprava.gov.hr": AuthorityLevel.GUIDANCE,
    "mfin.gov.hr": AuthorityLevel.GUIDANCE,
    "hnb.hr": AuthorityLevel.GUIDANCE,
    "mrosp.gov.hr": AuthorityLevel.GUIDANCE,
    "fina.hr": AuthorityLevel.PROCEDURE,
    "mirovinsko.hr": AuthorityLevel.PROCEDURE,
    "hzzo.hr": AuthorityLevel.PROCEDURE,
}

FAILURE_BACKOFF_BASE = timedelta(minutes=5)
FAILURE_BACKOFF_MAX = timedelta(days=1)

_ENDPOINT_LIST = TypeAdapter(list[DiscoveryEndpoint])


def derive_authority(url: str, hint: AuthorityLevel | None = None) -> AuthorityLevel:
    """
    Authority of a document: explicit hint first, then the publishing host.

    Subdomains inherit their parent's authority; unknown hosts are PRACTICE.
    """
    if hint is not None:
        return hint
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    while host:
        if host in HOST_AUTHORITY:
            return HOST_AUTHORITY[host]
        _, _, host = host.partition(".")
    return AuthorityLevel.PRACTICE


def default_endpoints() -> list[DiscoveryEndpoint]:
    """Built-in registry of Croatian regulatory sources."""
    return [
        DiscoveryEndpoint(
            name="Narodne novine - Sitemap",
            url="https://narodne-novine.nn.hr/sitemap.xml",
            listing_strategy=ListingStrategy.SITEMAP,
            priority=EndpointPriority.CRITICAL,
            frequency=ScrapeFrequency.EVERY_RUN,
            metadata=EndpointMetadata(url_pattern=r"sitemap_\d_\d{4}_\d+\.xml|/clanci/"),
            authority_hint=AuthorityLevel.LAW,
        ),
        DiscoveryEndpoint(
            name="Porezna uprava - Vijesti",
            url="https://porezna-uprava.gov.hr/hr/vijesti/8",
            listing_strategy=ListingStrategy.PAGINATION,
            priority=EndpointPriority.CRITICAL,
            frequency=ScrapeFrequency.EVERY_RUN,
            metadata=EndpointMetadata(pagination_pattern="?page={N}", max_pages=3),
        ),
        DiscoveryEndpoint(
            name="Porezna uprava - Misljenja",
            url="https://porezna-uprava.gov.hr/hr/misljenja-su/3951",
            listing_strategy=ListingStrategy.PAGINATION,
            priority=EndpointPriority.HIGH,
            frequency=ScrapeFrequency.DAILY,
            metadata=EndpointMetadata(pagination_pattern="?page={N}", max_pages=3),
        ),
        DiscoveryEndpoint(
            name="HZZO - Pravni akti",
            url="https://hzzo.hr/pravni-akti",
            listing_strategy=ListingStrategy.HTML_LIST,
            priority=EndpointPriority.HIGH,
            frequency=ScrapeFrequency.DAILY,
        ),
        DiscoveryEndpoint(
            name="HZZO - Novosti",
            url="https://hzzo.hr/novosti",
            listing_strategy=ListingStrategy.PAGINATION,
            priority=EndpointPriority.MEDIUM,
            frequency=ScrapeFrequency.DAILY,
            metadata=EndpointMetadata(pagination_pattern="?page={N}", max_pages=2),
        ),
        DiscoveryEndpoint(
            name="HZMO - Propisi",
            url="https://www.mirovinsko.hr/hr/propisi/54",
            listing_strategy=ListingStrategy.HTML_LIST,
            priority=EndpointPriority.HIGH,
            frequency=ScrapeFrequency.DAILY,
        ),
        DiscoveryEndpoint(
            name="HNB - Priopcenja",
            url="https://www.hnb.hr/javnost-rada/priopcenja",
            listing_strategy=ListingStrategy.HTML_LIST,
            priority=EndpointPriority.MEDIUM,
            frequency=ScrapeFrequency.DAILY,
        ),
        DiscoveryEndpoint(
            name="FINA - Novosti",
            url="https://www.fina.hr/novosti",
            listing_strategy=ListingStrategy.RSS,
            priority=EndpointPriority.LOW,
            frequency=ScrapeFrequency.WEEKLY,
        ),
    ]


def load_endpoints(path: Path | str) -> list[DiscoveryEndpoint]:
    """
    Load endpoint configuration from a JSON file.

    Raises:
        ValueError: file is not valid JSON or does not match the schema
    """
    raw = Path(path).read_text(encoding="utf-8")
    try:
        return _ENDPOINT_LIST.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Invalid endpoint configuration in {path}: {e}") from e


def configured_endpoints() -> list[DiscoveryEndpoint]:
    path = settings.pipeline.endpoints_file
    if path is None:
        return default_endpoints()
    return load_endpoints(path)


class EndpointRegistry:
    """Scheduling and health tracking over stored endpoints."""

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def seed(self, endpoints: list[DiscoveryEndpoint] | None = None) -> list[DiscoveryEndpoint]:
        """Upsert configured endpoints by URL, keeping health counters."""
        stored = [
            await self._store.upsert_endpoint(endpoint)
            for endpoint in (endpoints if endpoints is not None else configured_endpoints())
        ]
        logger.info("endpoints_seeded", count=len(stored))
        return stored

    async def list_endpoints(self, active_only: bool = False) -> list[DiscoveryEndpoint]:
        return await self._store.list_endpoints(active_only=active_only)

    async def due(self, now: datetime) -> list[DiscoveryEndpoint]:
        """Active endpoints due for a check, most critical first."""
        endpoints = await self._store.list_endpoints(active_only=True)
        due = [e for e in endpoints if e.is_due(now)]
        return sorted(due, key=lambda e: (e.priority.rank, e.name))

    async def record_success(self, endpoint: DiscoveryEndpoint, now: datetime) -> DiscoveryEndpoint:
        endpoint.consecutive_errors = 0
        endpoint.last_error = None
        endpoint.last_checked_at = now
        endpoint.next_check_at = now + endpoint.frequency.interval
        await self._store.save_endpoint(endpoint)
        return endpoint

    async def record_failure(
        self,
        endpoint: DiscoveryEndpoint,
        error: str,
        now: datetime,
    ) -> DiscoveryEndpoint:
        """
        Count a failure and back off; deactivate past the error threshold.
        """
        endpoint.consecutive_errors += 1
        endpoint.last_error = error[:500]
        endpoint.last_checked_at = now

        backoff = FAILURE_BACKOFF_BASE * (2 ** (endpoint.consecutive_errors - 1))
        endpoint.next_check_at = now + min(max(backoff, endpoint.frequency.interval), FAILURE_BACKOFF_MAX)

        threshold = settings.pipeline.endpoint_error_threshold
        if endpoint.consecutive_errors >= threshold:
            endpoint.is_active = False
            logger.error(
                "endpoint_deactivated",
                endpoint_id=endpoint.id,
                url=endpoint.url,
                consecutive_errors=endpoint.consecutive_errors,
                last_error=endpoint.last_error,
            )
        else:
            logger.warning(
                "endpoint_check_failed",
                endpoint_id=endpoint.id,
                url=endpoint.url,
                consecutive_errors=endpoint.consecutive_errors,
                next_check_at=endpoint.next_check_at.isoformat(),
            )

        await self._store.save_endpoint(endpoint)
        return endpoint
