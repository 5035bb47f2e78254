"""
Releaser Agent
==============

Publishes approved rules as versioned, content-hashed releases.

A release covers the APPROVED rules not yet in any release (read as one
snapshot) minus rules held by a conflict, plus published rules that have
since been deprecated. Two rules of the batch that contradict each other
are both held back and sent to the Arbiter. A T0/T1 rule without a human
approver is held back and logged as a gate violation.

Release type follows the highest risk tier involved: T0 major, T1 minor,
otherwise patch. An advisory summarizer may suggest a type; a
disagreeing suggestion is logged and ignored.

Hashing goes through ``canonical.compute_release_hash`` for both
publishing and verification.

Version: 0.1.0
"""

from collections import Counter
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, ValidationError

from services.regulatory_truth import lifecycle
from services.regulatory_truth.agents.reviewer import conflict_type_between
from services.regulatory_truth.canonical import compute_release_hash
from services.regulatory_truth.errors import (
    ApprovalRequired,
    ClaimError,
    EmptyRelease,
    ReleaseIntegrityError,
)
from services.regulatory_truth.models import (
    ChangelogEntry,
    RegulatoryConflict,
    RegulatoryRule,
    ReleaseType,
    RiskTier,
    RuleRelease,
    RuleStatus,
    Stage,
    utcnow,
)
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.store.base import PipelineStore
from shared.llm import LLMError, LLMProvider, get_llm_provider
from shared.logging import get_logger


logger = get_logger(__name__)


RELEASE_CLAIM = ("release", "publish")

INITIAL_VERSION = "0.0.0"


def release_type_for(tiers: list[RiskTier]) -> ReleaseType:
    """Policy: highest tier decides; T0 major, T1 minor, T2/T3 patch."""
    if RiskTier.T0 in tiers:
        return ReleaseType.MAJOR
    if RiskTier.T1 in tiers:
        return ReleaseType.MINOR
    return ReleaseType.PATCH


def bump_version(version: str | None, release_type: ReleaseType) -> str:
    major, minor, patch = (int(part) for part in (version or INITIAL_VERSION).split("."))
    if release_type == ReleaseType.MAJOR:
        return f"{major + 1}.0.0"
    if release_type == ReleaseType.MINOR:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def audit_counts(published: list[RegulatoryRule], deprecated: list[RegulatoryRule]) -> dict[str, int]:
    counts: Counter[str] = Counter()
    counts["published"] = len(published)
    counts["deprecated"] = len(deprecated)
    for rule in published:
        counts[f"tier_{rule.risk_tier.value}"] += 1
        counts[f"authority_{rule.authority_level.value}"] += 1
    return dict(counts)


# =============================================================================
# Advisory summarizer
# =============================================================================


class ReleaseSuggestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    release_type: ReleaseType | None = None
    summary: str | None = None


class ReleaseSummarizer:
    """Asks the language model for a release summary. Advisory only."""

    SUMMARY_PROMPT = """You summarize a batch of regulatory rule changes for a release note.

Respond with a JSON object:
{"release_type": "major" | "minor" | "patch", "summary": "two sentences"}"""

    def __init__(self, provider: LLMProvider | None = None) -> None:
        self._provider = provider

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_llm_provider()

    async def suggest(self, published: list[RegulatoryRule], deprecated: list[RegulatoryRule]) -> ReleaseSuggestion:
        lines = [f"+ {r.concept_slug} = {r.value} ({r.risk_tier.value})" for r in published]
        lines += [f"- {r.concept_slug} = {r.value} ({r.risk_tier.value})" for r in deprecated]
        data = await self.provider.generate_json(
            "Changes:\n" + "\n".join(lines),
            system_prompt=self.SUMMARY_PROMPT,
            temperature=0.0,
        )
        return ReleaseSuggestion.model_validate(data if isinstance(data, dict) else {})


# =============================================================================
# Releaser
# =============================================================================


@dataclass
class ReleasePlan:
    published: list[RegulatoryRule]
    deprecated: list[RegulatoryRule]
    excluded: list[str]
    conflicts: list[RegulatoryConflict] = field(default_factory=list)


class Releaser:
    """
    Atomic publication of approved rules.

    Args:
        store: pipeline store
        summarizer: optional advisory summarizer
        owner: claim owner identity for this releaser
        queue: receives conflicts found within a batch for the Arbiter
    """

    def __init__(
        self,
        store: PipelineStore,
        summarizer: ReleaseSummarizer | None = None,
        owner: str = "releaser",
        queue: WorkQueue | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._summarizer = summarizer
        self._owner = owner

    async def _pending_deprecations(self) -> list[RegulatoryRule]:
        """Deprecated rules that were released but not yet withdrawn by a release."""
        withdrawn: set[str] = set()
        for release in await self._store.list_releases():
            withdrawn.update(release.deprecated_rule_ids)
        return [
            rule
            for rule in await self._store.list_rules(statuses=[RuleStatus.DEPRECATED])
            if rule.release_id is not None and rule.id not in withdrawn
        ]

    async def plan(self) -> ReleasePlan:
        """
        Select the rules for the next release.

        Left out: rules named by an open conflict or held, T0/T1 rules
        without a human approver, and both rules of any contradicting pair
        within the batch (recorded as a new conflict).
        """
        snapshot = await self._store.approved_unpublished_snapshot()
        blocked = await self._store.open_conflict_rule_ids()

        candidates: list[RegulatoryRule] = []
        excluded: dict[str, str] = {}
        for rule in snapshot:
            if rule.id in blocked or rule.conflict_hold:
                excluded[rule.id] = "open_conflict"
                continue
            try:
                lifecycle.check_approval_gate(rule, rule.approved_by)
            except ApprovalRequired:
                excluded[rule.id] = "approval_required"
                continue
            candidates.append(rule)

        conflicts = await self._batch_conflicts(candidates)
        held = {rule_id for conflict in conflicts for rule_id in conflict.rule_ids}
        published = [rule for rule in candidates if rule.id not in held]
        excluded.update((rule_id, "batch_conflict") for rule_id in sorted(held))

        if excluded:
            logger.info("release_rules_excluded", rules=excluded)
        return ReleasePlan(published, await self._pending_deprecations(), list(excluded), conflicts)

    async def _batch_conflicts(self, rules: list[RegulatoryRule]) -> list[RegulatoryConflict]:
        """Record a conflict for every contradicting pair in ``rules`` and hold both rules."""
        conflicts: list[RegulatoryConflict] = []
        for index, rule in enumerate(rules):
            for other in rules[index + 1 :]:
                conflict_type = conflict_type_between(rule, other)
                if conflict_type is None:
                    continue
                conflict = RegulatoryConflict(
                    conflict_type=conflict_type,
                    concept_slug=rule.concept_slug,
                    rule_ids=[rule.id, other.id],
                    source_pointer_ids=[*rule.source_pointer_ids, *other.source_pointer_ids],
                    description=f"{rule.concept_slug}: {rule.value} vs {other.value}, both approved",
                )
                await self._store.add_conflict(conflict)
                conflicts.append(conflict)
                logger.warning(
                    "release_conflict_detected",
                    conflict_id=conflict.id,
                    conflict_type=conflict_type.value,
                    rule_ids=conflict.rule_ids,
                )

        held = {rule_id for conflict in conflicts for rule_id in conflict.rule_ids}
        for rule in rules:
            if rule.id in held:
                rule.conflict_hold = True
                rule.updated_at = utcnow()
                await self._store.save_rule(rule)
        if conflicts and self._queue is not None:
            await self._queue.put_many(Stage.ARBITER, [c.id for c in conflicts])
        return conflicts

    async def _advisory_type(self, plan: ReleasePlan, policy: ReleaseType) -> None:
        if self._summarizer is None:
            return
        try:
            suggestion = await self._summarizer.suggest(plan.published, plan.deprecated)
        except (LLMError, ValidationError) as e:
            logger.warning("release_summary_failed", error=str(e))
            return
        if suggestion.release_type is not None and suggestion.release_type != policy:
            logger.warning(
                "release_type_suggestion_ignored",
                suggested=suggestion.release_type.value,
                policy=policy.value,
            )
        if suggestion.summary:
            logger.info("release_summary", summary=suggestion.summary)

    async def publish(self, owner: str | None = None) -> RuleRelease:
        """
        Build and atomically publish the next release.

        Args:
            owner: claim owner; defaults to this releaser's identity

        Raises:
            ClaimError: another releaser is publishing
            EmptyRelease: nothing to publish or deprecate
        """
        owner = owner or self._owner
        kind, subject = RELEASE_CLAIM
        if not await self._store.claim(kind, subject, owner):
            raise ClaimError(kind, subject)
        try:
            return await self._publish()
        finally:
            await self._store.release_claim(kind, subject, owner)

    async def _publish(self) -> RuleRelease:
        plan = await self.plan()
        if not plan.published and not plan.deprecated:
            raise EmptyRelease()

        tiers = [r.risk_tier for r in [*plan.published, *plan.deprecated]]
        release_type = release_type_for(tiers)
        await self._advisory_type(plan, release_type)

        latest = await self._store.latest_release()
        previous = latest.version if latest else None
        release = RuleRelease(
            version=bump_version(previous, release_type),
            release_type=release_type,
            content_hash=compute_release_hash(plan.published),
            rule_ids=sorted(r.id for r in plan.published),
            deprecated_rule_ids=sorted(r.id for r in plan.deprecated),
            changelog=[
                *(
                    ChangelogEntry(
                        rule_id=r.id,
                        concept_slug=r.concept_slug,
                        change="added",
                        value=r.value,
                        risk_tier=r.risk_tier,
                    )
                    for r in sorted(plan.published, key=lambda r: (r.concept_slug, r.id))
                ),
                *(
                    ChangelogEntry(
                        rule_id=r.id,
                        concept_slug=r.concept_slug,
                        change="deprecated",
                        value=r.value,
                        risk_tier=r.risk_tier,
                    )
                    for r in sorted(plan.deprecated, key=lambda r: (r.concept_slug, r.id))
                ),
            ],
            audit=audit_counts(plan.published, plan.deprecated),
            previous_version=previous,
        )

        for rule in plan.published:
            lifecycle.transition(rule, RuleStatus.PUBLISHED)
            rule.release_id = release.id

        stored = await self._store.publish_release(release, plan.published, plan.deprecated)
        logger.info(
            "release_published",
            release_id=stored.id,
            version=stored.version,
            release_type=stored.release_type.value,
            content_hash=stored.content_hash,
            published=len(plan.published),
            deprecated=len(plan.deprecated),
            excluded=len(plan.excluded),
        )
        return stored

    # =========================================================================
    # Verification
    # =========================================================================

    async def recompute_hash(self, release_id: str) -> tuple[RuleRelease, str]:
        release = await self._store.get_release(release_id)
        rules = await self._store.get_rules(release.rule_ids)
        return release, compute_release_hash(rules)

    async def verify(self, release_id: str) -> bool:
        """True when the stored hash matches the recomputed canonical hash."""
        release, actual = await self.recompute_hash(release_id)
        if actual == release.content_hash:
            logger.info("release_verified", release_id=release.id, version=release.version)
            return True
        logger.error(
            "release_integrity_violation",
            release_id=release.id,
            version=release.version,
            expected_hash=release.content_hash,
            actual_hash=actual,
            alert=True,
        )
        return False

    async def verify_or_raise(self, release_id: str) -> RuleRelease:
        """
        Raises:
            ReleaseIntegrityError: stored and recomputed hashes differ
        """
        release, actual = await self.recompute_hash(release_id)
        if actual != release.content_hash:
            logger.error(
                "release_integrity_violation",
                release_id=release.id,
                expected_hash=release.content_hash,
                actual_hash=actual,
                alert=True,
            )
            raise ReleaseIntegrityError(release.id, release.content_hash, actual)
        return release
