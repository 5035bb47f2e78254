"""
Rule Lifecycle
==============

Status state machine for regulatory rules:

    DRAFT -> PENDING_REVIEW -> APPROVED -> PUBLISHED -> DEPRECATED
    DRAFT, PENDING_REVIEW -> REJECTED
    PENDING_REVIEW, APPROVED -> DEPRECATED

Every status change goes through ``transition``. Moving a T0/T1 rule to
APPROVED or PUBLISHED requires a human approver identity; the automated
approver id never counts as one.

Version: 0.1.0
"""

from services.regulatory_truth.errors import ApprovalRequired, InvalidTransition
from services.regulatory_truth.models import RegulatoryRule, RuleStatus, utcnow
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


TRANSITIONS: dict[RuleStatus, frozenset[RuleStatus]] = {
    RuleStatus.DRAFT: frozenset({RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED}),
    RuleStatus.PENDING_REVIEW: frozenset(
        {RuleStatus.APPROVED, RuleStatus.REJECTED, RuleStatus.DEPRECATED}
    ),
    RuleStatus.APPROVED: frozenset({RuleStatus.PUBLISHED, RuleStatus.DEPRECATED}),
    RuleStatus.PUBLISHED: frozenset({RuleStatus.DEPRECATED}),
    RuleStatus.REJECTED: frozenset(),
    RuleStatus.DEPRECATED: frozenset(),
}

GATED_STATUSES = frozenset({RuleStatus.APPROVED, RuleStatus.PUBLISHED})


def can_transition(from_status: RuleStatus, to_status: RuleStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


def is_human_approver(approver_id: str | None) -> bool:
    """A non-blank identity other than the automated approver."""
    if approver_id is None or not approver_id.strip():
        return False
    return approver_id.strip() != settings.pipeline.auto_approver_id


def check_approval_gate(rule: RegulatoryRule, approved_by: str | None) -> None:
    """
    Raises:
        ApprovalRequired: T0/T1 rule without a human approver
    """
    if not rule.risk_tier.requires_human_approval:
        return
    if is_human_approver(approved_by):
        return
    logger.error(
        "approval_gate_violation",
        rule_id=rule.id,
        risk_tier=rule.risk_tier.value,
        approved_by=approved_by,
    )
    reason = "automated approver" if approved_by else "no approver"
    raise ApprovalRequired(rule.id, rule.risk_tier.value, reason)


def transition(
    rule: RegulatoryRule,
    to_status: RuleStatus,
    approved_by: str | None = None,
) -> RegulatoryRule:
    """
    Move ``rule`` to ``to_status`` in place.

    Args:
        rule: rule to update
        to_status: target status
        approved_by: approver identity, required when entering APPROVED

    Raises:
        InvalidTransition: not an edge of the state machine
        ApprovalRequired: approval gate refused the change
    """
    if not can_transition(rule.status, to_status):
        raise InvalidTransition(rule.id, rule.status.value, to_status.value)

    if to_status in GATED_STATUSES:
        approver = approved_by if to_status == RuleStatus.APPROVED else rule.approved_by
        check_approval_gate(rule, approver)
        if to_status == RuleStatus.APPROVED:
            if not approver:
                raise ApprovalRequired(rule.id, rule.risk_tier.value, "no approver")
            rule.approved_by = approver
            rule.approved_at = utcnow()

    logger.debug(
        "rule_transition",
        rule_id=rule.id,
        from_status=rule.status.value,
        to_status=to_status.value,
    )
    rule.status = to_status
    rule.updated_at = utcnow()
    return rule


def legacy_auto_approve(rule: RegulatoryRule) -> RegulatoryRule:
    """
    Historical path approving T0/T1 rules with the automated approver id.

    Refused unless ``allow_legacy_t0_t1_auto_approval`` is on and
    ``disable_legacy_auto_approval`` is off. Rules approved this way still
    cannot be published: the Releaser requires a human approver.

    Raises:
        ApprovalRequired: the legacy path is disabled
        InvalidTransition: rule is not PENDING_REVIEW
    """
    pipeline = settings.pipeline
    if pipeline.disable_legacy_auto_approval or not pipeline.allow_legacy_t0_t1_auto_approval:
        logger.error(
            "approval_gate_violation",
            rule_id=rule.id,
            risk_tier=rule.risk_tier.value,
            path="legacy_auto_approval",
        )
        raise ApprovalRequired(rule.id, rule.risk_tier.value, "legacy auto-approval is disabled")
    if not can_transition(rule.status, RuleStatus.APPROVED):
        raise InvalidTransition(rule.id, rule.status.value, RuleStatus.APPROVED.value)

    logger.warning("legacy_auto_approval_used", rule_id=rule.id, risk_tier=rule.risk_tier.value)
    rule.approved_by = pipeline.auto_approver_id
    rule.approved_at = utcnow()
    rule.status = RuleStatus.APPROVED
    rule.updated_at = utcnow()
    return rule
