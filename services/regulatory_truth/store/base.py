"""
Pipeline Store Interface
========================

Persistence contract shared by every stage. Stages never share
in-process state; everything they exchange goes through a
``PipelineStore`` plus queue messages.

Implementations must make these operations atomic:

- ``insert_evidence``: hash uniqueness on ``(url, content_hash)``
- ``claim`` / ``claim_pending_evidence``: at most one live owner per unit
- ``publish_release``: every rule flips to PUBLISHED with the release
  record, or nothing changes

Version: 0.1.0
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from services.regulatory_truth.models import (
    AgentRun,
    Concept,
    ConflictStatus,
    DiscoveredItem,
    DiscoveredItemStatus,
    DiscoveryEndpoint,
    Evidence,
    ExtractionStatus,
    RegulatoryConflict,
    RegulatoryRule,
    RuleRelease,
    RuleStatus,
    RunStatus,
    SourcePointer,
    Stage,
    WorkClaim,
)


# Evidence columns that may change after insert
MUTABLE_EVIDENCE_FIELDS = frozenset(
    {"extraction_status", "extraction_attempts", "metadata", "authority_hint"}
)
CONTENT_EVIDENCE_FIELDS = frozenset({"raw_content", "content_hash", "url"})


class PipelineStore(ABC):
    """Abstract persistence for all pipeline records."""

    # =========================================================================
    # Discovery
    # =========================================================================

    @abstractmethod
    async def upsert_endpoint(self, endpoint: DiscoveryEndpoint) -> DiscoveryEndpoint: ...

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> DiscoveryEndpoint: ...

    @abstractmethod
    async def list_endpoints(self, active_only: bool = False) -> list[DiscoveryEndpoint]: ...

    @abstractmethod
    async def save_endpoint(self, endpoint: DiscoveryEndpoint) -> None: ...

    @abstractmethod
    async def add_item_if_new(self, item: DiscoveredItem) -> bool:
        """Insert unless ``(endpoint_id, url)`` exists; True when inserted."""

    @abstractmethod
    async def list_items(
        self,
        endpoint_id: str | None = None,
        status: DiscoveredItemStatus | None = None,
    ) -> list[DiscoveredItem]: ...

    @abstractmethod
    async def save_item(self, item: DiscoveredItem) -> None: ...

    # =========================================================================
    # Evidence
    # =========================================================================

    @abstractmethod
    async def insert_evidence(self, evidence: Evidence) -> Evidence:
        """Persist a new record; raises ``DuplicateEvidence`` on (url, hash)."""

    @abstractmethod
    async def get_evidence(self, evidence_id: str) -> Evidence: ...

    @abstractmethod
    async def find_evidence(self, url: str, content_hash: str) -> Evidence | None: ...

    @abstractmethod
    async def list_evidence(self, status: ExtractionStatus | None = None) -> list[Evidence]: ...

    @abstractmethod
    async def update_evidence(self, evidence_id: str, **fields: Any) -> Evidence:
        """Update non-content fields only (see ``MUTABLE_EVIDENCE_FIELDS``)."""

    @abstractmethod
    async def claim_pending_evidence(self, owner: str, limit: int = 1) -> list[Evidence]:
        """Atomically move up to ``limit`` PENDING records to PROCESSING."""

    # =========================================================================
    # Source pointers and concepts
    # =========================================================================

    @abstractmethod
    async def add_pointers(self, pointers: Iterable[SourcePointer]) -> None: ...

    @abstractmethod
    async def get_pointers(self, pointer_ids: Iterable[str]) -> list[SourcePointer]: ...

    @abstractmethod
    async def list_pointers(
        self,
        evidence_id: str | None = None,
        ungrouped_only: bool = False,
    ) -> list[SourcePointer]: ...

    @abstractmethod
    async def assign_pointers(self, pointer_ids: Iterable[str], rule_id: str) -> None: ...

    @abstractmethod
    async def upsert_concept(self, concept: Concept) -> Concept:
        """Insert on first use; returns the stored concept."""

    @abstractmethod
    async def list_concepts(self) -> list[Concept]: ...

    # =========================================================================
    # Rules
    # =========================================================================

    @abstractmethod
    async def add_rule(self, rule: RegulatoryRule) -> RegulatoryRule: ...

    @abstractmethod
    async def get_rule(self, rule_id: str) -> RegulatoryRule: ...

    @abstractmethod
    async def save_rule(self, rule: RegulatoryRule) -> None: ...

    @abstractmethod
    async def list_rules(
        self,
        statuses: Iterable[RuleStatus] | None = None,
        concept_slug: str | None = None,
    ) -> list[RegulatoryRule]: ...

    async def get_rules(self, rule_ids: Iterable[str]) -> list[RegulatoryRule]:
        return [await self.get_rule(rule_id) for rule_id in rule_ids]

    # =========================================================================
    # Conflicts
    # =========================================================================

    @abstractmethod
    async def add_conflict(self, conflict: RegulatoryConflict) -> RegulatoryConflict: ...

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> RegulatoryConflict: ...

    @abstractmethod
    async def save_conflict(self, conflict: RegulatoryConflict) -> None: ...

    @abstractmethod
    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
    ) -> list[RegulatoryConflict]: ...

    async def open_conflict_rule_ids(self) -> set[str]:
        """Ids of rules named by any OPEN or ESCALATED conflict."""
        rule_ids: set[str] = set()
        for conflict in await self.list_conflicts():
            if conflict.status.is_open:
                rule_ids.update(conflict.rule_ids)
        return rule_ids

    # =========================================================================
    # Releases
    # =========================================================================

    @abstractmethod
    async def approved_unpublished_snapshot(self) -> list[RegulatoryRule]:
        """APPROVED rules without a release, read in one transaction."""

    @abstractmethod
    async def publish_release(
        self,
        release: RuleRelease,
        published: list[RegulatoryRule],
        deprecated: list[RegulatoryRule],
    ) -> RuleRelease:
        """Atomically store the release and the rule status changes."""

    @abstractmethod
    async def get_release(self, release_id: str) -> RuleRelease: ...

    @abstractmethod
    async def latest_release(self) -> RuleRelease | None: ...

    @abstractmethod
    async def list_releases(self) -> list[RuleRelease]: ...

    # =========================================================================
    # Runs and claims
    # =========================================================================

    @abstractmethod
    async def save_run(self, run: AgentRun) -> None: ...

    @abstractmethod
    async def list_runs(
        self,
        stage: Stage | None = None,
        status: RunStatus | None = None,
        subject_id: str | None = None,
    ) -> list[AgentRun]: ...

    @abstractmethod
    async def claim(self, kind: str, subject_id: str, owner: str) -> bool:
        """Take exclusive hold of a unit of work; False if another owner holds it."""

    @abstractmethod
    async def release_claim(self, kind: str, subject_id: str, owner: str) -> None: ...

    @abstractmethod
    async def stale_claims(self, older_than: datetime) -> list[WorkClaim]: ...

    @abstractmethod
    async def drop_claim(self, kind: str, subject_id: str) -> None:
        """Remove a claim regardless of owner (stale-claim sweep)."""
