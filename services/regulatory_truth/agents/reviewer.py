"""
Reviewer Agent
==============

Validates draft rules, detects scope conflicts with approved and
published rules, auto-approves low-risk rules and carries out human
review decisions.

Checks applied before a rule leaves DRAFT:

- pointer coverage: every referenced pointer exists
- quote grounding: each quote is in its evidence (T0/T1 exact match only)
- no-inference: the rule value is stated in each quote
- confidence at or above ``confidence_floor``
- AppliesWhen parses

A failing rule stays DRAFT with notes; it is never forced forward.

Version: 0.1.0
"""

from dataclasses import dataclass, field

from services.regulatory_truth import lifecycle
from services.regulatory_truth.dsl import may_overlap, parse_predicate
from services.regulatory_truth.errors import ApprovalRequired, InvalidPredicate
from services.regulatory_truth.evidence import EvidenceStore
from services.regulatory_truth.models import (
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    Stage,
    utcnow,
)
from services.regulatory_truth.provenance import check_pointer
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.store.base import PipelineStore
from services.regulatory_truth.validators import values_agree
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


AUTO_APPROVABLE_TIERS = frozenset({RiskTier.T2, RiskTier.T3})


def conflict_type_between(rule: RegulatoryRule, other: RegulatoryRule) -> ConflictType | None:
    """
    How two rules of one concept contradict each other, or None.

    Rules conflict when their values differ and both their effective
    windows and their AppliesWhen scopes can overlap. Identical windows
    make a scope conflict; partially overlapping ones a temporal conflict.
    """
    if other.id == rule.id or other.concept_slug != rule.concept_slug:
        return None
    if values_agree(other.value, rule.value):
        return None
    if not rule.window_overlaps(other) or not may_overlap(rule.applies_when, other.applies_when):
        return None
    same_window = (
        rule.effective_from == other.effective_from
        and rule.effective_until == other.effective_until
    )
    return ConflictType.SCOPE if same_window else ConflictType.TEMPORAL


@dataclass
class ReviewOutcome:
    rule: RegulatoryRule
    passed: bool
    failures: list[str] = field(default_factory=list)
    conflicts: list[RegulatoryConflict] = field(default_factory=list)
    auto_approved: bool = False


class Reviewer:
    """
    Rule validation and approval.

    Args:
        store: pipeline store
        queue: receives conflict ids for the Arbiter and approved rule ids
            for the Releaser
    """

    def __init__(self, store: PipelineStore, queue: WorkQueue | None = None) -> None:
        self._store = store
        self._queue = queue
        self._evidence = EvidenceStore(store)

    # =========================================================================
    # Checks
    # =========================================================================

    async def check_rule(self, rule: RegulatoryRule) -> list[str]:
        """Failure notes for ``rule``; empty when every check passes."""
        failures: list[str] = []

        pointers = await self._store.get_pointers(rule.source_pointer_ids)
        found = {p.id for p in pointers}
        missing = [pid for pid in rule.source_pointer_ids if pid not in found]
        if missing:
            failures.append(f"missing source pointers: {', '.join(missing)}")
        if not pointers:
            failures.append("no source pointers")

        for pointer in pointers:
            # Integrity failures propagate; they are never recorded as review notes
            evidence = await self._evidence.verify(pointer.evidence_id)
            check = check_pointer(pointer, evidence, tier=rule.risk_tier, value=rule.value)
            for reason in check.reasons:
                failures.append(f"pointer {pointer.id}: {reason}")

        if rule.confidence < settings.pipeline.confidence_floor:
            failures.append(
                f"confidence {rule.confidence:.2f} below floor {settings.pipeline.confidence_floor:.2f}"
            )

        try:
            parse_predicate(rule.applies_when)
        except InvalidPredicate as e:
            failures.append(f"invalid applies_when: {e.message}")

        return failures

    # =========================================================================
    # Automated review
    # =========================================================================

    async def review(self, rule_id: str) -> ReviewOutcome:
        """
        Run the automated review of one rule.

        DRAFT rules that pass move to PENDING_REVIEW. Pending rules are
        checked for scope conflicts, then auto-approved when eligible.
        Rules in any other status are returned unchanged.
        """
        rule = await self._store.get_rule(rule_id)
        if rule.status not in (RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW):
            logger.debug("review_skipped", rule_id=rule_id, status=rule.status.value)
            return ReviewOutcome(rule=rule, passed=False)

        failures = await self.check_rule(rule)
        if failures:
            return await self._record_failures(rule, failures)

        if rule.status == RuleStatus.DRAFT:
            lifecycle.transition(rule, RuleStatus.PENDING_REVIEW)
            await self._store.save_rule(rule)

        outcome = ReviewOutcome(rule=rule, passed=True)
        outcome.conflicts = await self.detect_conflicts(rule)
        if outcome.conflicts or rule.conflict_hold:
            return outcome

        if self._auto_approvable(rule):
            lifecycle.transition(rule, RuleStatus.APPROVED, approved_by=settings.pipeline.auto_approver_id)
            await self._store.save_rule(rule)
            outcome.auto_approved = True
            if self._queue is not None:
                await self._queue.put(Stage.RELEASER, rule.id)
            logger.info(
                "rule_auto_approved",
                rule_id=rule.id,
                risk_tier=rule.risk_tier.value,
                confidence=rule.confidence,
            )
        else:
            logger.info(
                "rule_awaiting_human_review",
                rule_id=rule.id,
                risk_tier=rule.risk_tier.value,
                confidence=rule.confidence,
            )
        return outcome

    def _auto_approvable(self, rule: RegulatoryRule) -> bool:
        return (
            rule.risk_tier in AUTO_APPROVABLE_TIERS
            and rule.confidence >= settings.pipeline.auto_approve_min_confidence
        )

    async def _record_failures(self, rule: RegulatoryRule, failures: list[str]) -> ReviewOutcome:
        rule.validation_failures += 1
        stamp = utcnow().date().isoformat()
        rule.review_notes.extend(f"[{stamp}] {failure}" for failure in failures)
        rule.updated_at = utcnow()
        await self._store.save_rule(rule)

        exhausted = rule.validation_failures >= settings.pipeline.max_validation_failures
        logger.warning(
            "rule_validation_failed",
            rule_id=rule.id,
            status=rule.status.value,
            failures=failures,
            attempts=rule.validation_failures,
            needs_attention=exhausted,
        )
        return ReviewOutcome(rule=rule, passed=False, failures=failures)

    async def detect_conflicts(self, rule: RegulatoryRule) -> list[RegulatoryConflict]:
        """
        Raise conflicts against approved or published rules of the same
        concept with a different value and an intersecting scope.
        """
        existing = await self._store.list_rules(
            statuses=[RuleStatus.APPROVED, RuleStatus.PUBLISHED],
            concept_slug=rule.concept_slug,
        )
        known = {
            frozenset(c.rule_ids)
            for c in await self._store.list_conflicts(rule_id=rule.id)
            if c.status.is_open
        }

        conflicts: list[RegulatoryConflict] = []
        for other in existing:
            conflict_type = conflict_type_between(rule, other)
            if conflict_type is None or frozenset({rule.id, other.id}) in known:
                continue

            conflict = RegulatoryConflict(
                conflict_type=conflict_type,
                concept_slug=rule.concept_slug,
                rule_ids=[other.id, rule.id],
                source_pointer_ids=[*other.source_pointer_ids, *rule.source_pointer_ids],
                description=(
                    f"{rule.concept_slug}: {other.value} ({other.status.value}) "
                    f"vs {rule.value} ({rule.status.value})"
                ),
            )
            await self._store.add_conflict(conflict)
            conflicts.append(conflict)
            logger.warning(
                "rule_conflict_detected",
                conflict_id=conflict.id,
                conflict_type=conflict.conflict_type.value,
                rule_id=rule.id,
                other_rule_id=other.id,
            )

        if conflicts:
            rule.conflict_hold = True
            rule.updated_at = utcnow()
            await self._store.save_rule(rule)
            if self._queue is not None:
                await self._queue.put_many(Stage.ARBITER, [c.id for c in conflicts])
        return conflicts

    # =========================================================================
    # Human operations
    # =========================================================================

    async def approve(self, rule_id: str, reviewer_id: str) -> RegulatoryRule:
        """
        Approve a pending rule on behalf of a human reviewer.

        The rule is first checked against the rules approved since its
        automated review. A new conflict holds it at PENDING_REVIEW for the
        Arbiter instead of approving it.

        Raises:
            ApprovalRequired: blank or automated reviewer identity on a T0/T1 rule
            InvalidTransition: rule is not PENDING_REVIEW
        """
        rule = await self._store.get_rule(rule_id)
        if not reviewer_id or not reviewer_id.strip():
            raise ApprovalRequired(rule.id, rule.risk_tier.value, "no approver")
        reviewer_id = reviewer_id.strip()
        lifecycle.check_approval_gate(rule, reviewer_id)

        if rule.status == RuleStatus.PENDING_REVIEW:
            conflicts = await self.detect_conflicts(rule)
            if conflicts:
                logger.warning(
                    "rule_approval_held",
                    rule_id=rule.id,
                    reviewer_id=reviewer_id,
                    conflict_ids=[c.id for c in conflicts],
                )
                return rule

        lifecycle.transition(rule, RuleStatus.APPROVED, approved_by=reviewer_id)
        await self._store.save_rule(rule)
        if self._queue is not None and not rule.conflict_hold:
            await self._queue.put(Stage.RELEASER, rule.id)

        logger.info(
            "rule_approved",
            rule_id=rule.id,
            approved_by=rule.approved_by,
            risk_tier=rule.risk_tier.value,
            conflict_hold=rule.conflict_hold,
        )
        return rule

    async def reject(self, rule_id: str, reviewer_id: str, reason: str) -> RegulatoryRule:
        """
        Reject a rule. Terminal.

        Raises:
            ApprovalRequired: blank reviewer identity
            InvalidTransition: rule is past review
        """
        rule = await self._store.get_rule(rule_id)
        if not reviewer_id or not reviewer_id.strip():
            raise ApprovalRequired(rule.id, rule.risk_tier.value, "rejection needs a reviewer identity")

        lifecycle.transition(rule, RuleStatus.REJECTED)
        rule.review_notes.append(f"rejected by {reviewer_id.strip()}: {reason}")
        await self._store.save_rule(rule)
        logger.info("rule_rejected", rule_id=rule.id, reviewer_id=reviewer_id, reason=reason)
        return rule

    async def legacy_auto_approve(self, rule_id: str) -> RegulatoryRule:
        """Flag-gated historical approval path; see ``lifecycle.legacy_auto_approve``."""
        rule = await self._store.get_rule(rule_id)
        lifecycle.legacy_auto_approve(rule)
        await self._store.save_rule(rule)
        return rule

    async def pending_human_review(self) -> list[RegulatoryRule]:
        """PENDING_REVIEW rules that only a human can move forward."""
        pending = await self._store.list_rules(statuses=[RuleStatus.PENDING_REVIEW])
        return [
            rule
            for rule in pending
            if rule.risk_tier.requires_human_approval or not self._auto_approvable(rule)
        ]
