"""
Discovery and evidence capture.
"""

from services.regulatory_truth.sentinel.fetchers import (
    BaseFetcher,
    ContentFetcher,
    CrawlFetcher,
    FetchedContent,
    HtmlListFetcher,
    ListingEntry,
    ListingFetcher,
    PaginationFetcher,
    RssFetcher,
    SitemapFetcher,
    build_fetchers,
    create_http_client,
)
from services.regulatory_truth.sentinel.sentinel import EndpointReport, Sentinel, SentinelReport


__all__ = [
    "Sentinel",
    "SentinelReport",
    "EndpointReport",
    "BaseFetcher",
    "ListingFetcher",
    "ListingEntry",
    "FetchedContent",
    "ContentFetcher",
    "SitemapFetcher",
    "HtmlListFetcher",
    "RssFetcher",
    "PaginationFetcher",
    "CrawlFetcher",
    "build_fetchers",
    "create_http_client",
]
