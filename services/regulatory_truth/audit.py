"""
Integrity Auditor
=================

Re-checks the pipeline invariants across everything in the store and
reports PASS/FAIL per invariant:

- ``evidence_hash``: stored content hashes to its content hash
- ``quote_in_evidence``: quotes of approved/published rules are in their evidence
- ``no_inference``: published rule values are stated in their quotes
- ``provenance_coverage``: approved/published rules have pointers, none dangling
- ``approval_gate``: approved/published T0/T1 rules carry a human approver
- ``release_hash``: every release recomputes to its stored hash

Read-only: violations are reported and logged, never repaired.

Version: 0.1.0
"""

from dataclasses import dataclass, field
from enum import Enum

from services.regulatory_truth.canonical import compute_release_hash
from services.regulatory_truth.errors import NotFound
from services.regulatory_truth.evidence import hash_content
from services.regulatory_truth.lifecycle import is_human_approver
from services.regulatory_truth.models import Evidence, RegulatoryRule, RuleStatus, SourcePointer
from services.regulatory_truth.provenance import find_quote, value_in_quote
from services.regulatory_truth.store.base import PipelineStore
from shared.logging import get_logger


logger = get_logger(__name__)


class AuditStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


@dataclass
class InvariantResult:
    name: str
    checked: int = 0
    violations: list[str] = field(default_factory=list)

    @property
    def status(self) -> AuditStatus:
        return AuditStatus.FAIL if self.violations else AuditStatus.PASS


@dataclass
class AuditReport:
    results: list[InvariantResult]

    @property
    def passed(self) -> bool:
        return all(r.status == AuditStatus.PASS for r in self.results)

    def summary(self) -> dict[str, str]:
        return {r.name: r.status.value for r in self.results}


class IntegrityAuditor:
    """Store-wide invariant checks."""

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def run(self) -> AuditReport:
        evidence = {ev.id: ev for ev in await self._store.list_evidence()}
        live_rules = await self._store.list_rules(statuses=[RuleStatus.APPROVED, RuleStatus.PUBLISHED])

        quotes, coverage = await self._rule_pointers(live_rules, evidence)
        report = AuditReport(
            [
                self._evidence_hash(evidence),
                quotes,
                await self._no_inference(live_rules),
                coverage,
                self._approval_gate(live_rules),
                await self._release_hash(),
            ]
        )
        for result in report.results:
            if result.violations:
                logger.error(
                    "invariant_failed",
                    invariant=result.name,
                    violations=result.violations[:20],
                    total=len(result.violations),
                    alert=True,
                )
        logger.info("audit_completed", passed=report.passed, **report.summary())
        return report

    def _evidence_hash(self, evidence: dict[str, Evidence]) -> InvariantResult:
        result = InvariantResult("evidence_hash", checked=len(evidence))
        for ev in evidence.values():
            if hash_content(ev.raw_content) != ev.content_hash:
                result.violations.append(ev.id)
        return result

    async def _pointers(self, rule: RegulatoryRule) -> list[SourcePointer]:
        found = []
        for pointer_id in rule.source_pointer_ids:
            try:
                found.extend(await self._store.get_pointers([pointer_id]))
            except NotFound:
                continue
        return found

    async def _rule_pointers(
        self, rules: list[RegulatoryRule], evidence: dict[str, Evidence]
    ) -> tuple[InvariantResult, InvariantResult]:
        quotes = InvariantResult("quote_in_evidence")
        coverage = InvariantResult("provenance_coverage", checked=len(rules))
        for rule in rules:
            pointers = await self._pointers(rule)
            if len(pointers) < len(rule.source_pointer_ids) or not pointers:
                coverage.violations.append(rule.id)
            for pointer in pointers:
                quotes.checked += 1
                source = evidence.get(pointer.evidence_id)
                if source is None or not find_quote(source.raw_content, pointer.exact_quote).found:
                    quotes.violations.append(f"{rule.id}/{pointer.id}")
        return quotes, coverage

    async def _no_inference(self, rules: list[RegulatoryRule]) -> InvariantResult:
        result = InvariantResult("no_inference")
        for rule in rules:
            if rule.status != RuleStatus.PUBLISHED:
                continue
            for pointer in await self._pointers(rule):
                result.checked += 1
                if not value_in_quote(rule.value, pointer.exact_quote, pointer.value_type):
                    result.violations.append(f"{rule.id}/{pointer.id}")
        return result

    def _approval_gate(self, rules: list[RegulatoryRule]) -> InvariantResult:
        result = InvariantResult("approval_gate")
        for rule in rules:
            if not rule.risk_tier.requires_human_approval:
                continue
            result.checked += 1
            if not is_human_approver(rule.approved_by):
                result.violations.append(rule.id)
        return result

    async def _release_hash(self) -> InvariantResult:
        releases = await self._store.list_releases()
        result = InvariantResult("release_hash", checked=len(releases))
        for release in releases:
            rules = await self._store.get_rules(release.rule_ids)
            if compute_release_hash(rules) != release.content_hash:
                result.violations.append(release.id)
        return result
