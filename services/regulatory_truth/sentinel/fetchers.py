"""
Listing and Content Fetchers
============================

One listing fetcher per ``ListingStrategy``, each returning a normalized
list of ``ListingEntry(url, title?, published_at?)``, plus the content
fetcher that returns the raw document string and declared content type.

All fetchers share one ``httpx.AsyncClient`` and one ``RateLimiter`` so
the inter-request delay holds across strategies.

Version: 0.1.0
"""

import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import date
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from services.regulatory_truth.errors import FetchError
from services.regulatory_truth.models import DiscoveryEndpoint, EndpointMetadata, ListingStrategy
from services.regulatory_truth.retry import RateLimiter, is_transient_http, retrying
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)

TEXT_CONTENT_TYPES = ("text/", "application/xml", "application/json", "application/xhtml+xml")
SKIPPED_SCHEMES = ("mailto:", "javascript:", "tel:", "#")

_LOCAL_DATE = re.compile(r"\b(\d{1,2})\.\s?(\d{1,2})\.\s?(\d{4})\.?")
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})")


@dataclass
class ListingEntry:
    """A candidate document found on a listing."""

    url: str
    title: str | None = None
    published_at: date | None = None


@dataclass
class FetchedContent:
    """A fetched document, content exactly as decoded from the response."""

    url: str
    content: str
    content_type: str
    status_code: int


def create_http_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """HTTP client with the configured timeout and user agent."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.pipeline.fetch_timeout_seconds, connect=10.0),
        headers={
            "User-Agent": settings.pipeline.user_agent,
            "Accept": "text/html, application/xml, application/rss+xml, application/json, text/plain",
        },
        follow_redirects=True,
        transport=transport,
    )


# =============================================================================
# Parsing helpers
# =============================================================================


def parse_date(text: str | None) -> date | None:
    """Parse ISO, RFC 822 and ``dd.mm.yyyy`` dates; None when absent or invalid."""
    if not text:
        return None
    text = text.strip()
    match = _ISO_DATE.search(text)
    if match:
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None
    match = _LOCAL_DATE.search(text)
    if match:
        try:
            return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        except ValueError:
            return None
    try:
        return parsedate_to_datetime(text).date()
    except (TypeError, ValueError):
        return None


def canonical_url(url: str) -> str:
    return urldefrag(url.strip())[0]


def same_host(url: str, other: str) -> bool:
    def host(u: str) -> str:
        name = (urlparse(u).hostname or "").lower()
        return name[4:] if name.startswith("www.") else name

    return host(url) == host(other)


def extract_links(html: str, base_url: str, link_pattern: str | None = None) -> list[ListingEntry]:
    """Anchors on the same host as ``base_url``, optionally filtered by regex."""
    soup = BeautifulSoup(html, "lxml")
    pattern = re.compile(link_pattern) if link_pattern else None
    entries: list[ListingEntry] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith(SKIPPED_SCHEMES):
            continue
        url = canonical_url(urljoin(base_url, href))
        if not url.startswith(("http://", "https://")) or not same_host(url, base_url):
            continue
        if pattern is not None and not pattern.search(url):
            continue
        title = anchor.get_text(" ", strip=True) or None
        context = anchor.parent.get_text(" ", strip=True) if anchor.parent else ""
        entries.append(ListingEntry(url=url, title=title, published_at=parse_date(context)))
    return entries


def dedupe(entries: list[ListingEntry]) -> list[ListingEntry]:
    """Deduplicate by canonical URL, keeping the first title/date seen."""
    seen: dict[str, ListingEntry] = {}
    for entry in entries:
        url = canonical_url(entry.url)
        existing = seen.get(url)
        if existing is None:
            seen[url] = ListingEntry(url=url, title=entry.title, published_at=entry.published_at)
            continue
        existing.title = existing.title or entry.title
        existing.published_at = existing.published_at or entry.published_at
    return list(seen.values())


def apply_filters(entries: list[ListingEntry], metadata: EndpointMetadata) -> list[ListingEntry]:
    """URL pattern and date range filters. Undated entries pass date filters."""
    pattern = re.compile(metadata.url_pattern) if metadata.url_pattern else None
    kept: list[ListingEntry] = []
    for entry in entries:
        if pattern is not None and not pattern.search(entry.url):
            continue
        if entry.published_at is not None:
            if metadata.date_from and entry.published_at < metadata.date_from:
                continue
            if metadata.date_to and entry.published_at > metadata.date_to:
                continue
        kept.append(entry)
    return kept


# =============================================================================
# Fetchers
# =============================================================================


class BaseFetcher:
    """Rate-limited, retried GET over a shared client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
        attempts: int = 3,
    ) -> None:
        self._client = client
        self._limiter = limiter or RateLimiter(settings.pipeline.request_delay_seconds)
        self._attempts = attempts

    async def _get(self, url: str) -> httpx.Response:
        """
        GET with rate limiting and transient-failure retry.

        Raises:
            FetchError: non-retryable status or retries exhausted
        """
        try:
            async for attempt in retrying(self._attempts, is_transient_http):
                with attempt:
                    await self._limiter.wait()
                    response = await self._client.get(url)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(url, f"HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

        logger.debug("fetched", url=url, status=response.status_code, size=len(response.content))
        return response


class ListingFetcher(BaseFetcher, ABC):
    """Lists candidate documents for one strategy."""

    strategy: ListingStrategy

    @abstractmethod
    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]: ...

    async def discover(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        """Deduplicated, filtered and capped listing for ``endpoint``."""
        entries = dedupe(await self._list(endpoint))
        filtered = apply_filters(entries, endpoint.metadata)
        limit = settings.pipeline.max_items_per_endpoint
        logger.info(
            "listing_fetched",
            endpoint_id=endpoint.id,
            strategy=self.strategy.value,
            found=len(entries),
            kept=min(len(filtered), limit),
        )
        return filtered[:limit]


class SitemapFetcher(ListingFetcher):
    """Sitemap XML, following sitemap indexes one level down."""

    strategy = ListingStrategy.SITEMAP

    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        response = await self._get(endpoint.url)
        soup = BeautifulSoup(response.text, "xml")

        if soup.find("sitemapindex") is None:
            return self._urlset(soup)

        pattern = re.compile(endpoint.metadata.url_pattern) if endpoint.metadata.url_pattern else None
        children = [
            loc.get_text(strip=True)
            for loc in soup.select("sitemap > loc")
            if pattern is None or pattern.search(loc.get_text(strip=True))
        ]
        entries: list[ListingEntry] = []
        for child in children[: endpoint.metadata.max_pages]:
            child_response = await self._get(child)
            entries.extend(self._urlset(BeautifulSoup(child_response.text, "xml")))
        return entries

    @staticmethod
    def _urlset(soup: BeautifulSoup) -> list[ListingEntry]:
        entries = []
        for node in soup.find_all("url"):
            loc = node.find("loc")
            if loc is None:
                continue
            lastmod = node.find("lastmod")
            entries.append(
                ListingEntry(
                    url=loc.get_text(strip=True),
                    published_at=parse_date(lastmod.get_text(strip=True)) if lastmod else None,
                )
            )
        return entries


class HtmlListFetcher(ListingFetcher):
    """Anchors on a single HTML listing page."""

    strategy = ListingStrategy.HTML_LIST

    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        response = await self._get(endpoint.url)
        return extract_links(response.text, str(response.url), endpoint.metadata.link_pattern)


class RssFetcher(ListingFetcher):
    """RSS 2.0 items and Atom entries."""

    strategy = ListingStrategy.RSS

    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        response = await self._get(endpoint.url)
        soup = BeautifulSoup(response.text, "xml")
        entries: list[ListingEntry] = []

        for item in soup.find_all("item"):
            link = item.find("link")
            if link is None or not link.get_text(strip=True):
                continue
            entries.append(
                ListingEntry(
                    url=urljoin(endpoint.url, link.get_text(strip=True)),
                    title=_text(item.find("title")),
                    published_at=parse_date(_text(item.find("pubDate"))),
                )
            )

        for entry in soup.find_all("entry"):
            link = entry.find("link", href=True)
            if link is None:
                continue
            entries.append(
                ListingEntry(
                    url=urljoin(endpoint.url, link["href"]),
                    title=_text(entry.find("title")),
                    published_at=parse_date(
                        _text(entry.find("published")) or _text(entry.find("updated"))
                    ),
                )
            )
        return entries


class PaginationFetcher(ListingFetcher):
    """
    Numbered listing pages. Page 1 is the endpoint URL; later pages come
    from ``pagination_pattern`` with ``{N}`` replaced by the page number.
    Stops at ``max_pages`` or on a page yielding no new links.
    """

    strategy = ListingStrategy.PAGINATION

    @staticmethod
    def page_url(endpoint: DiscoveryEndpoint, page: int) -> str:
        pattern = endpoint.metadata.pagination_pattern or "?page={N}"
        if page == 1:
            return endpoint.url
        rendered = pattern.replace("{N}", str(page))
        if rendered.startswith("?") and "?" in endpoint.url:
            return f"{endpoint.url}&{rendered[1:]}"
        if rendered.startswith(("?", "&")):
            return endpoint.url + rendered
        return urljoin(endpoint.url, rendered)

    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        entries: list[ListingEntry] = []
        seen: set[str] = set()
        for page in range(1, endpoint.metadata.max_pages + 1):
            url = self.page_url(endpoint, page)
            response = await self._get(url)
            links = [
                link
                for link in extract_links(response.text, url, endpoint.metadata.link_pattern)
                if link.url not in seen and link.url != canonical_url(url)
            ]
            if not links:
                logger.debug("pagination_exhausted", endpoint_id=endpoint.id, page=page)
                break
            seen.update(link.url for link in links)
            entries.extend(links)
        return entries


class CrawlFetcher(ListingFetcher):
    """Bounded breadth-first crawl on the endpoint's host."""

    strategy = ListingStrategy.CRAWL

    async def _list(self, endpoint: DiscoveryEndpoint) -> list[ListingEntry]:
        metadata = endpoint.metadata
        queue: deque[tuple[str, int]] = deque([(canonical_url(endpoint.url), 0)])
        visited: set[str] = set()
        found: list[ListingEntry] = []

        while queue and len(visited) < metadata.max_pages:
            url, depth = queue.popleft()
            if url in visited:
                continue
            visited.add(url)
            try:
                response = await self._get(url)
            except FetchError as e:
                if depth == 0:
                    raise
                logger.warning("crawl_page_failed", url=url, error=e.message)
                continue
            if "html" not in response.headers.get("content-type", "text/html"):
                continue

            for link in extract_links(response.text, url):
                if link.url in visited:
                    continue
                found.append(link)
                if depth + 1 <= metadata.max_depth:
                    queue.append((link.url, depth + 1))

        if metadata.link_pattern:
            pattern = re.compile(metadata.link_pattern)
            found = [entry for entry in found if pattern.search(entry.url)]
        return found


class ContentFetcher(BaseFetcher):
    """Fetches one document as text plus its declared content type."""

    async def fetch(self, url: str) -> FetchedContent:
        """
        Raises:
            FetchError: request failed or the content type is not textual
        """
        response = await self._get(url)
        content_type = response.headers.get("content-type", "text/plain")
        if not content_type.lower().startswith(TEXT_CONTENT_TYPES):
            raise FetchError(url, f"unsupported content type {content_type}", response.status_code)
        return FetchedContent(
            url=str(response.url),
            content=response.text,
            content_type=content_type,
            status_code=response.status_code,
        )


def _text(node: Any) -> str | None:
    if node is None:
        return None
    return node.get_text(strip=True) or None


FETCHER_CLASSES: dict[ListingStrategy, type[ListingFetcher]] = {
    ListingStrategy.SITEMAP: SitemapFetcher,
    ListingStrategy.HTML_LIST: HtmlListFetcher,
    ListingStrategy.RSS: RssFetcher,
    ListingStrategy.PAGINATION: PaginationFetcher,
    ListingStrategy.CRAWL: CrawlFetcher,
}


def build_fetchers(
    client: httpx.AsyncClient,
    limiter: RateLimiter | None = None,
) -> dict[ListingStrategy, ListingFetcher]:
    limiter = limiter or RateLimiter(settings.pipeline.request_delay_seconds)
    return {strategy: cls(client, limiter) for strategy, cls in FETCHER_CLASSES.items()}
