"""
Arbiter Agent
=============

Resolves conflicts between rules of the same concept.

Decision order:

1. authority level (LAW > GUIDANCE > PROCEDURE > PRACTICE), higher wins
2. on an authority tie, the most recent source publication date wins
   (``published_at``, falling back to ``fetched_at``, over the rule's
   evidence)
3. still tied: escalate to a human

Pointer-level ``source`` conflicts are always escalated. Losing rules
are deprecated with ``superseded_by``; no rule is ever deleted. Every
resolution stores its rationale and the comparison inputs.

Version: 0.1.0
"""

from datetime import date
from typing import Any

from services.regulatory_truth import lifecycle
from services.regulatory_truth.errors import ConflictNotOpen, NotFound
from services.regulatory_truth.models import (
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
    Stage,
    utcnow,
)
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.store.base import PipelineStore
from services.regulatory_truth.validators import values_agree
from shared.logging import get_logger


logger = get_logger(__name__)


ARBITER_ID = "arbiter"

DEAD_STATUSES = frozenset({RuleStatus.DEPRECATED, RuleStatus.REJECTED})


class Arbiter:
    """
    Conflict resolution by authority, then recency, then escalation.

    Args:
        store: pipeline store
        queue: receives winners for the Reviewer or Releaser and resolved
            source conflicts for the Composer
    """

    def __init__(self, store: PipelineStore, queue: WorkQueue | None = None) -> None:
        self._store = store
        self._queue = queue

    async def _source_date(self, rule: RegulatoryRule) -> date | None:
        latest: date | None = None
        for pointer in await self._store.get_pointers(rule.source_pointer_ids):
            evidence = await self._store.get_evidence(pointer.evidence_id)
            if latest is None or evidence.source_date > latest:
                latest = evidence.source_date
        return latest

    async def _open_conflict(self, conflict_id: str) -> RegulatoryConflict:
        conflict = await self._store.get_conflict(conflict_id)
        if conflict.status == ConflictStatus.RESOLVED:
            raise ConflictNotOpen(conflict.id, conflict.status.value)
        return conflict

    async def compare(self, rules: list[RegulatoryRule]) -> tuple[RegulatoryRule | None, str, dict[str, Any]]:
        """
        Pick a winner among ``rules``.

        Returns:
            (winner or None when tied, rationale, comparison inputs)
        """
        inputs: dict[str, dict[str, Any]] = {}
        for rule in rules:
            source_date = await self._source_date(rule)
            inputs[rule.id] = {
                "authority_level": rule.authority_level.value,
                "authority_rank": rule.authority_level.rank,
                "source_date": source_date.isoformat() if source_date else None,
                "value": rule.value,
                "status": rule.status.value,
            }
        comparison: dict[str, Any] = {"rules": inputs}

        best_rank = min(rule.authority_level.rank for rule in rules)
        top = [rule for rule in rules if rule.authority_level.rank == best_rank]
        if len(top) == 1:
            winner = top[0]
            comparison["decided_by"] = "authority"
            return winner, f"{winner.authority_level.value} outranks the other sources", comparison

        dated = [(inputs[rule.id]["source_date"], rule) for rule in top]
        latest = max((d for d, _ in dated if d is not None), default=None)
        newest = [rule for d, rule in dated if d is not None and d == latest]
        if len(newest) == 1:
            winner = newest[0]
            comparison["decided_by"] = "recency"
            return (
                winner,
                f"equal authority ({winner.authority_level.value}); most recent source published {latest}",
                comparison,
            )

        comparison["decided_by"] = "tie"
        return None, "equal authority and equal source dates", comparison

    # =========================================================================
    # Automated arbitration
    # =========================================================================

    async def arbitrate(self, conflict_id: str) -> RegulatoryConflict:
        """
        Resolve or escalate one conflict.

        Raises:
            ConflictNotOpen: conflict is already resolved
        """
        conflict = await self._open_conflict(conflict_id)
        if conflict.status == ConflictStatus.ESCALATED:
            logger.info("conflict_awaiting_human", conflict_id=conflict.id)
            return conflict

        if conflict.conflict_type == ConflictType.SOURCE:
            return await self.escalate(conflict.id, reason="sources disagree on the value")

        rules = [r for r in await self._store.get_rules(conflict.rule_ids) if r.status not in DEAD_STATUSES]
        if len(rules) < 2:
            winner = rules[0] if rules else None
            return await self._resolve(
                conflict,
                winner,
                [],
                "conflicting rules already retired",
                {"decided_by": "withdrawn", "live_rule_ids": [r.id for r in rules]},
                ARBITER_ID,
            )

        winner, rationale, comparison = await self.compare(rules)
        if winner is None:
            return await self.escalate(conflict.id, reason=rationale, comparison=comparison)

        losers = [r for r in rules if r.id != winner.id]
        return await self._resolve(conflict, winner, losers, rationale, comparison, ARBITER_ID)

    async def _resolve(
        self,
        conflict: RegulatoryConflict,
        winner: RegulatoryRule | None,
        losers: list[RegulatoryRule],
        rationale: str,
        comparison: dict[str, Any],
        resolved_by: str,
    ) -> RegulatoryConflict:
        for loser in losers:
            if loser.status in DEAD_STATUSES:
                continue
            was_published = loser.status == RuleStatus.PUBLISHED
            lifecycle.transition(loser, RuleStatus.DEPRECATED)
            loser.superseded_by = winner.id if winner else None
            loser.conflict_hold = False
            loser.review_notes.append(f"superseded in conflict {conflict.id}: {rationale}")
            await self._store.save_rule(loser)
            logger.info(
                "rule_deprecated",
                rule_id=loser.id,
                superseded_by=loser.superseded_by,
                conflict_id=conflict.id,
            )
            if was_published and self._queue is not None:
                await self._queue.put(Stage.RELEASER, loser.id)

        conflict.status = ConflictStatus.RESOLVED
        conflict.resolution = ConflictResolution(
            winning_rule_id=winner.id if winner else None,
            losing_rule_ids=[r.id for r in losers],
            rationale=rationale,
            comparison=comparison,
            resolved_by=resolved_by,
        )
        await self._store.save_conflict(conflict)

        if winner is not None:
            await self._release_hold(winner)

        logger.info(
            "conflict_resolved",
            conflict_id=conflict.id,
            winning_rule_id=winner.id if winner else None,
            losing_rule_ids=[r.id for r in losers],
            decided_by=comparison.get("decided_by"),
            resolved_by=resolved_by,
        )
        return conflict

    async def _release_hold(self, rule: RegulatoryRule) -> None:
        """
        Lift the hold once no open conflict names the rule; requeue it.

        An approved winner goes back to the Releaser even without a hold,
        since its open conflict kept it out of releases.
        """
        still_open = [c for c in await self._store.list_conflicts(rule_id=rule.id) if c.status.is_open]
        if still_open:
            return
        was_held = rule.conflict_hold
        if was_held:
            rule.conflict_hold = False
            rule.updated_at = utcnow()
            await self._store.save_rule(rule)
        if self._queue is None:
            return
        if rule.status == RuleStatus.PENDING_REVIEW and was_held:
            await self._queue.put(Stage.REVIEWER, rule.id)
        elif rule.status == RuleStatus.APPROVED:
            await self._queue.put(Stage.RELEASER, rule.id)

    # =========================================================================
    # Human operations
    # =========================================================================

    async def escalate(
        self,
        conflict_id: str,
        reason: str | None = None,
        comparison: dict[str, Any] | None = None,
    ) -> RegulatoryConflict:
        """
        Hand a conflict to human review. It keeps blocking release.

        Raises:
            ConflictNotOpen: conflict is already resolved
        """
        conflict = await self._open_conflict(conflict_id)
        conflict.status = ConflictStatus.ESCALATED
        conflict.escalated_at = utcnow()
        if reason:
            conflict.description = f"{conflict.description} [escalated: {reason}]"
        await self._store.save_conflict(conflict)
        logger.warning(
            "conflict_escalated",
            conflict_id=conflict.id,
            conflict_type=conflict.conflict_type.value,
            reason=reason,
            comparison=comparison,
        )
        return conflict

    async def resolve_conflict(
        self,
        conflict_id: str,
        winning_rule_id: str,
        rationale: str,
        resolved_by: str,
    ) -> RegulatoryConflict:
        """
        Record a human decision.

        For ``source`` conflicts ``winning_rule_id`` names the winning
        source pointer; pointers disagreeing with it are set aside and the
        rest return to composition.

        Raises:
            ConflictNotOpen: conflict is already resolved
            NotFound: winner is not part of the conflict
        """
        conflict = await self._open_conflict(conflict_id)
        comparison: dict[str, Any] = {"decided_by": "human"}

        if conflict.conflict_type == ConflictType.SOURCE:
            if winning_rule_id not in conflict.source_pointer_ids:
                raise NotFound("source pointer in conflict", winning_rule_id)
            pointers = await self._store.get_pointers(conflict.source_pointer_ids)
            winning = next(p for p in pointers if p.id == winning_rule_id)
            comparison["winning_pointer_id"] = winning.id
            comparison["losing_pointer_ids"] = [
                p.id for p in pointers if not values_agree(p.extracted_value, winning.extracted_value)
            ]
            conflict.status = ConflictStatus.RESOLVED
            conflict.resolution = ConflictResolution(
                rationale=rationale,
                comparison=comparison,
                resolved_by=resolved_by,
            )
            await self._store.save_conflict(conflict)
            if self._queue is not None:
                await self._queue.put(Stage.COMPOSER, conflict.id)
            logger.info(
                "conflict_resolved",
                conflict_id=conflict.id,
                winning_pointer_id=winning.id,
                losing_pointer_ids=comparison["losing_pointer_ids"],
                resolved_by=resolved_by,
            )
            return conflict

        if winning_rule_id not in conflict.rule_ids:
            raise NotFound("rule in conflict", winning_rule_id)
        rules = await self._store.get_rules(conflict.rule_ids)
        winner = next(r for r in rules if r.id == winning_rule_id)
        losers = [r for r in rules if r.id != winning_rule_id]
        return await self._resolve(conflict, winner, losers, rationale, comparison, resolved_by)

    async def escalated(self) -> list[RegulatoryConflict]:
        return await self._store.list_conflicts(status=ConflictStatus.ESCALATED)
