"""
Tests for the Arbiter Agent
===========================

Tests for:
- Authority precedence (LAW outranks GUIDANCE)
- Recency on equal authority
- Escalation of ties and source conflicts
- Human resolution

Version: 0.1.0
"""

from datetime import date

import pytest

from services.regulatory_truth.agents.arbiter import Arbiter
from services.regulatory_truth.agents.composer import Composer
from services.regulatory_truth.errors import ConflictNotOpen, NotFound
from services.regulatory_truth.evidence import EvidenceStore
from services.regulatory_truth.models import (
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    Evidence,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
    Stage,
)
from services.regulatory_truth.queues import InMemoryWorkQueue
from services.regulatory_truth.store import InMemoryStore
from tests.conftest import PointerFactory, RuleFactory


RATE_QUOTE = "Opća stopa PDV-a iznosi 25%"
GUIDANCE_QUOTE = "stopa PDV-a iznosi 13%"


@pytest.fixture
def arbiter(memory_store: InMemoryStore, work_queue: InMemoryWorkQueue) -> Arbiter:
    return Arbiter(memory_store, work_queue)


async def add_rule_conflict(
    store: InMemoryStore,
    *rules: RegulatoryRule,
    conflict_type: ConflictType = ConflictType.SCOPE,
) -> RegulatoryConflict:
    conflict = RegulatoryConflict(
        conflict_type=conflict_type,
        concept_slug=rules[0].concept_slug,
        rule_ids=[r.id for r in rules],
        description="test conflict",
    )
    return await store.add_conflict(conflict)


class TestAuthority:
    """Tests for authority precedence."""

    @pytest.mark.asyncio
    async def test_law_beats_newer_guidance(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        """The published LAW rule stays; the GUIDANCE rule is superseded."""
        law = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.PUBLISHED,
            approved_by="reviewer-1",
        )
        guidance = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        conflict = await add_rule_conflict(memory_store, law, guidance)

        resolved = await arbiter.arbitrate(conflict.id)

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution.winning_rule_id == law.id
        assert resolved.resolution.losing_rule_ids == [guidance.id]
        assert resolved.resolution.comparison["decided_by"] == "authority"
        assert resolved.resolution.resolved_by == "arbiter"

        stored_law = await memory_store.get_rule(law.id)
        stored_guidance = await memory_store.get_rule(guidance.id)
        assert stored_law.status == RuleStatus.PUBLISHED
        assert stored_guidance.status == RuleStatus.DEPRECATED
        assert stored_guidance.superseded_by == law.id
        assert len(await memory_store.list_rules()) == 2

    @pytest.mark.asyncio
    async def test_comparison_inputs_are_stored(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PENDING_REVIEW)
        guidance = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        conflict = await add_rule_conflict(memory_store, law, guidance)

        resolved = await arbiter.arbitrate(conflict.id)

        inputs = resolved.resolution.comparison["rules"]
        assert inputs[law.id]["authority_level"] == "law"
        assert inputs[law.id]["source_date"] == "2023-12-01"
        assert inputs[guidance.id]["source_date"] == "2024-03-01"


class TestRecency:
    """Tests for the recency tiebreak."""

    @pytest.mark.asyncio
    async def test_newest_source_wins_on_equal_authority(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        evidence_store: EvidenceStore,
        law_evidence: Evidence,
    ) -> None:
        amended = await evidence_store.put(
            "https://narodne-novine.nn.hr/clanci/sluzbeni/2024_06_70_1.html",
            "Opća stopa PDV-a iznosi 24%.",
            "text/plain",
            published_at=date(2024, 6, 1),
        )
        old = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PUBLISHED, approved_by="r1")
        new = await make_rule(amended, "Opća stopa PDV-a iznosi 24%", "24", status=RuleStatus.PENDING_REVIEW)
        conflict = await add_rule_conflict(memory_store, old, new)

        resolved = await arbiter.arbitrate(conflict.id)

        assert resolved.resolution.winning_rule_id == new.id
        assert resolved.resolution.comparison["decided_by"] == "recency"
        assert (await memory_store.get_rule(old.id)).status == RuleStatus.DEPRECATED
        # Deprecating a published rule needs a new release
        assert await work_queue.get(Stage.RELEASER, timeout=0.01) == old.id

    @pytest.mark.asyncio
    async def test_tie_is_escalated(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        guidance_evidence: Evidence,
    ) -> None:
        a = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        b = await make_rule(
            guidance_evidence,
            "iznosi 13%",
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        conflict = await add_rule_conflict(memory_store, a, b)

        escalated = await arbiter.arbitrate(conflict.id)

        assert escalated.status == ConflictStatus.ESCALATED
        assert escalated.escalated_at is not None
        assert [c.id for c in await arbiter.escalated()] == [conflict.id]
        assert (await memory_store.get_rule(a.id)).status == RuleStatus.PENDING_REVIEW
        assert (await memory_store.get_rule(b.id)).status == RuleStatus.PENDING_REVIEW

        # Escalated conflicts wait for a human
        again = await arbiter.arbitrate(conflict.id)
        assert again.status == ConflictStatus.ESCALATED


class TestEscalation:
    """Tests for source conflicts and withdrawn rules."""

    @pytest.mark.asyncio
    async def test_source_conflict_always_escalates(
        self,
        arbiter: Arbiter,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, RATE_QUOTE, "25")
        b = await make_pointer(guidance_evidence, GUIDANCE_QUOTE, "13")
        conflict = await memory_store.add_conflict(
            RegulatoryConflict(
                conflict_type=ConflictType.SOURCE,
                source_pointer_ids=[a.id, b.id],
                description="sources disagree",
            )
        )

        escalated = await arbiter.arbitrate(conflict.id)

        assert escalated.status == ConflictStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_retired_rule_resolves_as_withdrawn(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PUBLISHED, approved_by="r1")
        gone = await make_rule(guidance_evidence, GUIDANCE_QUOTE, "13", status=RuleStatus.REJECTED)
        conflict = await add_rule_conflict(memory_store, law, gone)

        resolved = await arbiter.arbitrate(conflict.id)

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution.comparison["decided_by"] == "withdrawn"
        assert resolved.resolution.winning_rule_id == law.id

    @pytest.mark.asyncio
    async def test_resolved_conflict_is_closed(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PENDING_REVIEW)
        guidance = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        conflict = await add_rule_conflict(memory_store, law, guidance)
        await arbiter.arbitrate(conflict.id)

        with pytest.raises(ConflictNotOpen):
            await arbiter.arbitrate(conflict.id)
        with pytest.raises(ConflictNotOpen):
            await arbiter.escalate(conflict.id)
        with pytest.raises(ConflictNotOpen):
            await arbiter.resolve_conflict(conflict.id, law.id, "again", "reviewer-1")


class TestHumanResolution:
    """Tests for Arbiter.resolve_conflict."""

    @pytest.mark.asyncio
    async def test_human_can_pick_lower_authority(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PUBLISHED, approved_by="r1")
        guidance = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            authority_level=AuthorityLevel.GUIDANCE,
            status=RuleStatus.PENDING_REVIEW,
        )
        guidance.conflict_hold = True
        await memory_store.save_rule(guidance)
        conflict = await add_rule_conflict(memory_store, law, guidance)
        await arbiter.escalate(conflict.id, reason="needs a tax advisor")

        resolved = await arbiter.resolve_conflict(
            conflict.id, guidance.id, "hospitality rate applies", "reviewer-1"
        )

        assert resolved.resolution.resolved_by == "reviewer-1"
        assert resolved.resolution.comparison == {"decided_by": "human"}
        assert (await memory_store.get_rule(law.id)).status == RuleStatus.DEPRECATED
        winner = await memory_store.get_rule(guidance.id)
        assert not winner.conflict_hold
        queued = [await work_queue.get(Stage.RELEASER, timeout=0.01), await work_queue.get(Stage.REVIEWER, timeout=0.01)]
        assert queued == [law.id, guidance.id]

    @pytest.mark.asyncio
    async def test_winner_must_be_in_conflict(
        self,
        arbiter: Arbiter,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(law_evidence, RATE_QUOTE, "25", status=RuleStatus.PENDING_REVIEW)
        guidance = await make_rule(guidance_evidence, GUIDANCE_QUOTE, "13", status=RuleStatus.PENDING_REVIEW)
        conflict = await add_rule_conflict(memory_store, law, guidance)

        with pytest.raises(NotFound):
            await arbiter.resolve_conflict(conflict.id, "rule_unknown", "x", "reviewer-1")

    @pytest.mark.asyncio
    async def test_source_resolution_returns_winner_to_composition(
        self,
        arbiter: Arbiter,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        composer = Composer(memory_store, work_queue)
        law = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25")
        guidance = await make_pointer(guidance_evidence, GUIDANCE_QUOTE, "13")
        report = await composer.compose_pending()
        conflict = report.conflicts[0]
        await arbiter.arbitrate(conflict.id)

        resolved = await arbiter.resolve_conflict(conflict.id, law.id, "gazette text governs", "reviewer-1")

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution.comparison["losing_pointer_ids"] == [guidance.id]
        assert await work_queue.get(Stage.COMPOSER, timeout=0.01) == conflict.id

        recomposed = await composer.compose_pending()
        assert len(recomposed.rules) == 1
        assert recomposed.rules[0].source_pointer_ids == [law.id]

    @pytest.mark.asyncio
    async def test_source_winner_must_be_a_conflict_pointer(
        self,
        arbiter: Arbiter,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, RATE_QUOTE, "25")
        b = await make_pointer(guidance_evidence, GUIDANCE_QUOTE, "13")
        conflict = await memory_store.add_conflict(
            RegulatoryConflict(
                conflict_type=ConflictType.SOURCE,
                source_pointer_ids=[a.id, b.id],
                description="sources disagree",
            )
        )

        with pytest.raises(NotFound):
            await arbiter.resolve_conflict(conflict.id, "sp_other", "x", "reviewer-1")
