"""
In-Memory Store
===============

``PipelineStore`` backed by dictionaries behind one ``asyncio.Lock``.

Used for tests and single-process development runs. Records are copied
on the way in and out so callers never hold references into the store.

Version: 0.1.0
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from services.regulatory_truth.errors import (
    ClaimError,
    DuplicateEvidence,
    ImmutableEvidenceError,
    NotFound,
)
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
    utcnow,
)
from services.regulatory_truth.store.base import MUTABLE_EVIDENCE_FIELDS, PipelineStore


M = TypeVar("M", bound=BaseModel)


def _copy(record: M) -> M:
    return record.model_copy(deep=True)


class InMemoryStore(PipelineStore):
    """Dictionary-backed store; safe for concurrent asyncio tasks."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._endpoints: dict[str, DiscoveryEndpoint] = {}
        self._items: dict[str, DiscoveredItem] = {}
        self._evidence: dict[str, Evidence] = {}
        self._evidence_keys: dict[tuple[str, str], str] = {}
        self._pointers: dict[str, SourcePointer] = {}
        self._concepts: dict[str, Concept] = {}
        self._rules: dict[str, RegulatoryRule] = {}
        self._conflicts: dict[str, RegulatoryConflict] = {}
        self._releases: list[RuleRelease] = []
        self._runs: dict[str, AgentRun] = {}
        self._claims: dict[tuple[str, str], WorkClaim] = {}

    # =========================================================================
    # Discovery
    # =========================================================================

    async def upsert_endpoint(self, endpoint: DiscoveryEndpoint) -> DiscoveryEndpoint:
        async with self._lock:
            existing = next(
                (e for e in self._endpoints.values() if e.url == endpoint.url),
                None,
            )
            if existing is not None:
                # Keep runtime health counters, refresh configuration
                merged = endpoint.model_copy(
                    update={
                        "id": existing.id,
                        "is_active": existing.is_active,
                        "consecutive_errors": existing.consecutive_errors,
                        "last_checked_at": existing.last_checked_at,
                        "next_check_at": existing.next_check_at,
                        "last_error": existing.last_error,
                    }
                )
                self._endpoints[existing.id] = _copy(merged)
                return _copy(merged)
            self._endpoints[endpoint.id] = _copy(endpoint)
            return _copy(endpoint)

    async def get_endpoint(self, endpoint_id: str) -> DiscoveryEndpoint:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise NotFound("DiscoveryEndpoint", endpoint_id)
        return _copy(endpoint)

    async def list_endpoints(self, active_only: bool = False) -> list[DiscoveryEndpoint]:
        return [
            _copy(e) for e in self._endpoints.values() if e.is_active or not active_only
        ]

    async def save_endpoint(self, endpoint: DiscoveryEndpoint) -> None:
        async with self._lock:
            if endpoint.id not in self._endpoints:
                raise NotFound("DiscoveryEndpoint", endpoint.id)
            self._endpoints[endpoint.id] = _copy(endpoint)

    async def add_item_if_new(self, item: DiscoveredItem) -> bool:
        async with self._lock:
            for existing in self._items.values():
                if existing.endpoint_id == item.endpoint_id and existing.url == item.url:
                    return False
            self._items[item.id] = _copy(item)
            return True

    async def list_items(
        self,
        endpoint_id: str | None = None,
        status: DiscoveredItemStatus | None = None,
    ) -> list[DiscoveredItem]:
        return [
            _copy(i)
            for i in self._items.values()
            if (endpoint_id is None or i.endpoint_id == endpoint_id)
            and (status is None or i.status == status)
        ]

    async def save_item(self, item: DiscoveredItem) -> None:
        async with self._lock:
            self._items[item.id] = _copy(item)

    # =========================================================================
    # Evidence
    # =========================================================================

    async def insert_evidence(self, evidence: Evidence) -> Evidence:
        async with self._lock:
            key = (evidence.url, evidence.content_hash)
            existing_id = self._evidence_keys.get(key)
            if existing_id is not None:
                raise DuplicateEvidence(_copy(self._evidence[existing_id]))
            self._evidence[evidence.id] = _copy(evidence)
            self._evidence_keys[key] = evidence.id
            return _copy(evidence)

    async def get_evidence(self, evidence_id: str) -> Evidence:
        evidence = self._evidence.get(evidence_id)
        if evidence is None:
            raise NotFound("Evidence", evidence_id)
        return _copy(evidence)

    async def find_evidence(self, url: str, content_hash: str) -> Evidence | None:
        evidence_id = self._evidence_keys.get((url, content_hash))
        return _copy(self._evidence[evidence_id]) if evidence_id else None

    async def list_evidence(self, status: ExtractionStatus | None = None) -> list[Evidence]:
        return [
            _copy(e)
            for e in self._evidence.values()
            if status is None or e.extraction_status == status
        ]

    async def update_evidence(self, evidence_id: str, **fields: Any) -> Evidence:
        illegal = sorted(set(fields) - MUTABLE_EVIDENCE_FIELDS)
        if illegal:
            raise ImmutableEvidenceError(evidence_id, illegal)
        async with self._lock:
            evidence = self._evidence.get(evidence_id)
            if evidence is None:
                raise NotFound("Evidence", evidence_id)
            updated = evidence.model_copy(update=fields)
            self._evidence[evidence_id] = updated
            return _copy(updated)

    async def claim_pending_evidence(self, owner: str, limit: int = 1) -> list[Evidence]:
        claimed: list[Evidence] = []
        async with self._lock:
            for evidence_id, evidence in self._evidence.items():
                if len(claimed) >= limit:
                    break
                if evidence.extraction_status != ExtractionStatus.PENDING:
                    continue
                if ("evidence", evidence_id) in self._claims:
                    continue
                updated = evidence.model_copy(
                    update={"extraction_status": ExtractionStatus.PROCESSING}
                )
                self._evidence[evidence_id] = updated
                self._claims[("evidence", evidence_id)] = WorkClaim(
                    kind="evidence", subject_id=evidence_id, owner=owner
                )
                claimed.append(_copy(updated))
        return claimed

    # =========================================================================
    # Source pointers and concepts
    # =========================================================================

    async def add_pointers(self, pointers: Iterable[SourcePointer]) -> None:
        async with self._lock:
            for pointer in pointers:
                self._pointers[pointer.id] = _copy(pointer)

    async def get_pointers(self, pointer_ids: Iterable[str]) -> list[SourcePointer]:
        result = []
        for pointer_id in pointer_ids:
            pointer = self._pointers.get(pointer_id)
            if pointer is None:
                raise NotFound("SourcePointer", pointer_id)
            result.append(_copy(pointer))
        return result

    async def list_pointers(
        self,
        evidence_id: str | None = None,
        ungrouped_only: bool = False,
    ) -> list[SourcePointer]:
        return [
            _copy(p)
            for p in self._pointers.values()
            if (evidence_id is None or p.evidence_id == evidence_id)
            and (not ungrouped_only or p.rule_id is None)
        ]

    async def assign_pointers(self, pointer_ids: Iterable[str], rule_id: str) -> None:
        async with self._lock:
            for pointer_id in pointer_ids:
                pointer = self._pointers.get(pointer_id)
                if pointer is None:
                    raise NotFound("SourcePointer", pointer_id)
                self._pointers[pointer_id] = pointer.model_copy(update={"rule_id": rule_id})

    async def upsert_concept(self, concept: Concept) -> Concept:
        async with self._lock:
            stored = self._concepts.setdefault(concept.slug, _copy(concept))
            return _copy(stored)

    async def list_concepts(self) -> list[Concept]:
        return [_copy(c) for c in self._concepts.values()]

    # =========================================================================
    # Rules
    # =========================================================================

    async def add_rule(self, rule: RegulatoryRule) -> RegulatoryRule:
        async with self._lock:
            self._rules[rule.id] = _copy(rule)
            return _copy(rule)

    async def get_rule(self, rule_id: str) -> RegulatoryRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFound("RegulatoryRule", rule_id)
        return _copy(rule)

    async def save_rule(self, rule: RegulatoryRule) -> None:
        async with self._lock:
            if rule.id not in self._rules:
                raise NotFound("RegulatoryRule", rule.id)
            self._rules[rule.id] = _copy(rule).model_copy(update={"updated_at": utcnow()})

    async def list_rules(
        self,
        statuses: Iterable[RuleStatus] | None = None,
        concept_slug: str | None = None,
    ) -> list[RegulatoryRule]:
        wanted = set(statuses) if statuses is not None else None
        return [
            _copy(r)
            for r in self._rules.values()
            if (wanted is None or r.status in wanted)
            and (concept_slug is None or r.concept_slug == concept_slug)
        ]

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def add_conflict(self, conflict: RegulatoryConflict) -> RegulatoryConflict:
        async with self._lock:
            self._conflicts[conflict.id] = _copy(conflict)
            return _copy(conflict)

    async def get_conflict(self, conflict_id: str) -> RegulatoryConflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise NotFound("RegulatoryConflict", conflict_id)
        return _copy(conflict)

    async def save_conflict(self, conflict: RegulatoryConflict) -> None:
        async with self._lock:
            if conflict.id not in self._conflicts:
                raise NotFound("RegulatoryConflict", conflict.id)
            self._conflicts[conflict.id] = _copy(conflict)

    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
    ) -> list[RegulatoryConflict]:
        return [
            _copy(c)
            for c in self._conflicts.values()
            if (status is None or c.status == status)
            and (rule_id is None or rule_id in c.rule_ids)
        ]

    # =========================================================================
    # Releases
    # =========================================================================

    async def approved_unpublished_snapshot(self) -> list[RegulatoryRule]:
        async with self._lock:
            return [
                _copy(r)
                for r in self._rules.values()
                if r.status == RuleStatus.APPROVED and r.release_id is None
            ]

    async def publish_release(
        self,
        release: RuleRelease,
        published: list[RegulatoryRule],
        deprecated: list[RegulatoryRule],
    ) -> RuleRelease:
        async with self._lock:
            # Validate the whole batch before touching anything
            for rule in published:
                current = self._rules.get(rule.id)
                if current is None:
                    raise NotFound("RegulatoryRule", rule.id)
                if current.status != RuleStatus.APPROVED or current.release_id is not None:
                    raise ClaimError("rule", rule.id, owner=current.release_id)
            for rule in deprecated:
                if rule.id not in self._rules:
                    raise NotFound("RegulatoryRule", rule.id)

            now = utcnow()
            for rule in [*published, *deprecated]:
                self._rules[rule.id] = _copy(rule).model_copy(update={"updated_at": now})
            self._releases.append(_copy(release))
            return _copy(release)

    async def get_release(self, release_id: str) -> RuleRelease:
        for release in self._releases:
            if release.id == release_id:
                return _copy(release)
        raise NotFound("RuleRelease", release_id)

    async def latest_release(self) -> RuleRelease | None:
        return _copy(self._releases[-1]) if self._releases else None

    async def list_releases(self) -> list[RuleRelease]:
        return [_copy(r) for r in self._releases]

    # =========================================================================
    # Runs and claims
    # =========================================================================

    async def save_run(self, run: AgentRun) -> None:
        async with self._lock:
            self._runs[run.id] = _copy(run)

    async def list_runs(
        self,
        stage: Stage | None = None,
        status: RunStatus | None = None,
        subject_id: str | None = None,
    ) -> list[AgentRun]:
        return [
            _copy(r)
            for r in self._runs.values()
            if (stage is None or r.stage == stage)
            and (status is None or r.status == status)
            and (subject_id is None or r.subject_id == subject_id)
        ]

    async def claim(self, kind: str, subject_id: str, owner: str) -> bool:
        async with self._lock:
            existing = self._claims.get((kind, subject_id))
            if existing is not None and existing.owner != owner:
                return False
            self._claims[(kind, subject_id)] = WorkClaim(
                kind=kind, subject_id=subject_id, owner=owner
            )
            return True

    async def release_claim(self, kind: str, subject_id: str, owner: str) -> None:
        async with self._lock:
            existing = self._claims.get((kind, subject_id))
            if existing is not None and existing.owner == owner:
                del self._claims[(kind, subject_id)]

    async def stale_claims(self, older_than: datetime) -> list[WorkClaim]:
        return [_copy(c) for c in self._claims.values() if c.claimed_at < older_than]

    async def drop_claim(self, kind: str, subject_id: str) -> None:
        async with self._lock:
            self._claims.pop((kind, subject_id), None)
