"""
Pipeline Models
===============

Records persisted between pipeline stages: discovery endpoints and
items, evidence, source pointers, concepts, rules, conflicts, releases
and agent runs.

Version: 0.1.0
"""

from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from services.regulatory_truth.errors import MissingProvenance


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Generate a prefixed random identifier (``ev_3f2a...``)."""
    return f"{prefix}_{uuid4().hex[:20]}"


# =============================================================================
# Enums
# =============================================================================


class ListingStrategy(str, Enum):
    """How an endpoint lists candidate documents."""

    SITEMAP = "sitemap"
    HTML_LIST = "html_list"
    RSS = "rss"
    PAGINATION = "pagination"
    CRAWL = "crawl"


class EndpointPriority(str, Enum):
    """Polling priority; critical endpoints are checked first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return list(EndpointPriority).index(self)


class ScrapeFrequency(str, Enum):
    """How often an endpoint is due."""

    EVERY_RUN = "every_run"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return {
            ScrapeFrequency.EVERY_RUN: timedelta(0),
            ScrapeFrequency.HOURLY: timedelta(hours=1),
            ScrapeFrequency.DAILY: timedelta(days=1),
            ScrapeFrequency.WEEKLY: timedelta(weeks=1),
        }[self]


class DiscoveredItemStatus(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    FAILED = "failed"


class ContentClass(str, Enum):
    """Broad class of fetched content, derived from the content type."""

    HTML = "html"
    XML = "xml"
    JSON = "json"
    TEXT = "text"
    PDF_TEXT = "pdf_text"


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    FAILED = "failed"


class MatchType(str, Enum):
    """How a quote was located in its evidence."""

    EXACT = "exact"
    NORMALIZED = "normalized"


class ValueType(str, Enum):
    """Type of an extracted or rule value."""

    PERCENTAGE = "percentage"
    CURRENCY = "currency"
    COUNT = "count"
    DATE = "date"
    DEADLINE = "deadline"
    THRESHOLD = "threshold"
    INTEREST_RATE = "interest_rate"
    EXCHANGE_RATE = "exchange_rate"
    CODE = "code"
    BOOLEAN = "boolean"
    TEXT = "text"


class AuthorityLevel(str, Enum):
    """Precedence class of the issuing source, strongest first."""

    LAW = "law"
    GUIDANCE = "guidance"
    PROCEDURE = "procedure"
    PRACTICE = "practice"

    @property
    def rank(self) -> int:
        """Lower rank means higher authority (LAW=1)."""
        return list(AuthorityLevel).index(self) + 1


class RiskTier(str, Enum):
    """Business-impact classification, T0 most critical."""

    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"

    @property
    def requires_human_approval(self) -> bool:
        return self in (RiskTier.T0, RiskTier.T1)

    @property
    def rank(self) -> int:
        return int(self.value[1])


class RuleStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class ConflictType(str, Enum):
    SOURCE = "source"
    SCOPE = "scope"
    TEMPORAL = "temporal"


class ConflictStatus(str, Enum):
    OPEN = "open"
    ESCALATED = "escalated"
    RESOLVED = "resolved"

    @property
    def is_open(self) -> bool:
        """Escalated conflicts are still unresolved and block release."""
        return self is not ConflictStatus.RESOLVED


class ReleaseType(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class Stage(str, Enum):
    SENTINEL = "sentinel"
    EXTRACTOR = "extractor"
    COMPOSER = "composer"
    REVIEWER = "reviewer"
    ARBITER = "arbiter"
    RELEASER = "releaser"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Discovery
# =============================================================================


class EndpointMetadata(BaseModel):
    """Strategy-specific listing filters."""

    url_pattern: str | None = Field(default=None, description="Regex candidate URLs must match")
    link_pattern: str | None = Field(default=None, description="Regex for anchors on HTML lists")
    pagination_pattern: str | None = Field(
        default=None,
        description="Page URL template containing {N}",
    )
    max_pages: int = Field(default=5, ge=1)
    max_depth: int = Field(default=1, ge=0)
    date_from: date | None = None
    date_to: date | None = None


class DiscoveryEndpoint(BaseModel):
    """A pollable source."""

    id: str = Field(default_factory=lambda: new_id("ep"))
    name: str
    url: str
    listing_strategy: ListingStrategy
    priority: EndpointPriority = EndpointPriority.MEDIUM
    frequency: ScrapeFrequency = ScrapeFrequency.DAILY
    metadata: EndpointMetadata = Field(default_factory=EndpointMetadata)
    authority_hint: AuthorityLevel | None = None

    is_active: bool = True
    consecutive_errors: int = 0
    last_checked_at: datetime | None = None
    next_check_at: datetime | None = None
    last_error: str | None = None

    def is_due(self, now: datetime) -> bool:
        return self.is_active and (self.next_check_at is None or now >= self.next_check_at)


class DiscoveredItem(BaseModel):
    """A candidate document found at an endpoint."""

    id: str = Field(default_factory=lambda: new_id("di"))
    endpoint_id: str
    url: str
    title: str | None = None
    published_at: date | None = None
    status: DiscoveredItemStatus = DiscoveredItemStatus.PENDING
    fetch_attempts: int = 0
    evidence_id: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Evidence and pointers
# =============================================================================


class Evidence(BaseModel):
    """Raw fetched content. ``raw_content`` and ``content_hash`` never change."""

    id: str = Field(default_factory=lambda: new_id("ev"))
    url: str
    raw_content: str
    content_hash: str
    content_type: str = "text/plain"
    content_class: ContentClass = ContentClass.TEXT
    fetched_at: datetime = Field(default_factory=utcnow)
    published_at: date | None = None
    endpoint_id: str | None = None
    authority_hint: AuthorityLevel | None = None
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    extraction_attempts: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_date(self) -> date:
        """Publication date, falling back to the fetch date."""
        return self.published_at or self.fetched_at.date()


class SourcePointer(BaseModel):
    """A claim extracted from one evidence record, with its verbatim quote."""

    id: str = Field(default_factory=lambda: new_id("sp"))
    evidence_id: str
    exact_quote: str
    extracted_value: str
    value_type: ValueType
    domain: str
    confidence: float = Field(ge=0.0, le=1.0)
    match_type: MatchType = MatchType.EXACT
    start_offset: int | None = None
    end_offset: int | None = None
    article_ref: str | None = None
    rule_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Concept(BaseModel):
    """A named regulatory topic grouping rules over time."""

    slug: str
    title: str
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Rules
# =============================================================================


class RegulatoryRule(BaseModel):
    """A structured, evaluable fact backed by at least one source pointer."""

    id: str = Field(default_factory=lambda: new_id("rule"))
    concept_slug: str
    title: str
    applies_when: dict[str, Any] = Field(default_factory=lambda: {"op": "true"})
    value: str
    value_type: ValueType
    authority_level: AuthorityLevel
    risk_tier: RiskTier
    status: RuleStatus = RuleStatus.DRAFT
    confidence: float = Field(ge=0.0, le=1.0)
    effective_from: date
    effective_until: date | None = None
    source_pointer_ids: list[str]

    approved_by: str | None = None
    approved_at: datetime | None = None
    superseded_by: str | None = None
    review_notes: list[str] = Field(default_factory=list)
    validation_failures: int = 0
    conflict_hold: bool = False
    release_id: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _require_provenance(self) -> "RegulatoryRule":
        if not self.source_pointer_ids:
            raise MissingProvenance(self.concept_slug)
        return self

    def window_overlaps(self, other: "RegulatoryRule") -> bool:
        """True when both effective windows share at least one day."""
        self_end = self.effective_until or date.max
        other_end = other.effective_until or date.max
        return self.effective_from <= other_end and other.effective_from <= self_end


# =============================================================================
# Conflicts
# =============================================================================


class ConflictResolution(BaseModel):
    """Outcome of arbitration, kept for audit replay."""

    winning_rule_id: str | None = None
    losing_rule_ids: list[str] = Field(default_factory=list)
    rationale: str
    comparison: dict[str, Any] = Field(default_factory=dict)
    resolved_by: str
    resolved_at: datetime = Field(default_factory=utcnow)


class RegulatoryConflict(BaseModel):
    """A detected contradiction between rules or between source pointers."""

    id: str = Field(default_factory=lambda: new_id("cf"))
    conflict_type: ConflictType
    status: ConflictStatus = ConflictStatus.OPEN
    concept_slug: str | None = None
    rule_ids: list[str] = Field(default_factory=list)
    source_pointer_ids: list[str] = Field(default_factory=list)
    description: str
    resolution: ConflictResolution | None = None
    escalated_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Releases and runs
# =============================================================================


class ChangelogEntry(BaseModel):
    rule_id: str
    concept_slug: str
    change: str
    value: str | None = None
    risk_tier: RiskTier | None = None


class RuleRelease(BaseModel):
    """A versioned, content-hashed bundle of published rules."""

    id: str = Field(default_factory=lambda: new_id("rel"))
    version: str
    release_type: ReleaseType
    content_hash: str
    rule_ids: list[str]
    deprecated_rule_ids: list[str] = Field(default_factory=list)
    changelog: list[ChangelogEntry] = Field(default_factory=list)
    audit: dict[str, int] = Field(default_factory=dict)
    previous_version: str | None = None
    published_at: datetime = Field(default_factory=utcnow)


class AgentRun(BaseModel):
    """One attempt of one stage on one unit of work."""

    id: str = Field(default_factory=lambda: new_id("run"))
    stage: Stage
    subject_id: str
    status: RunStatus = RunStatus.RUNNING
    attempt: int = 1
    error: str | None = None
    output_summary: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None


class WorkClaim(BaseModel):
    """Exclusive hold of a unit of work by a worker."""

    kind: str
    subject_id: str
    owner: str
    claimed_at: datetime = Field(default_factory=utcnow)
