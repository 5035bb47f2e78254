"""
Tests for the Releaser Agent
============================

Tests for:
- Release type policy and version bumps
- Canonical content hashing and verification
- Approval gate and conflict exclusion at publish time

Version: 0.1.0
"""

import asyncio

import pytest

from services.regulatory_truth import lifecycle
from services.regulatory_truth.agents.releaser import (
    Releaser,
    ReleaseSummarizer,
    bump_version,
    release_type_for,
)
from services.regulatory_truth.canonical import canonical_json, compute_release_hash
from services.regulatory_truth.errors import (
    ClaimError,
    EmptyRelease,
    ReleaseIntegrityError,
)
from services.regulatory_truth.models import (
    ConflictType,
    Evidence,
    RegulatoryConflict,
    ReleaseType,
    RiskTier,
    RuleStatus,
    Stage,
    ValueType,
)
from services.regulatory_truth.queues import InMemoryWorkQueue
from services.regulatory_truth.store import InMemoryStore
from shared.config import settings
from tests.conftest import FakeLLMProvider, RuleFactory


RATE_QUOTE = "Opća stopa PDV-a iznosi 25%"
THRESHOLD_QUOTE = "Prag za ulazak u sustav PDV-a iznosi 40.000,00 eura"
GUIDANCE_QUOTE = "stopa PDV-a iznosi 13%"


@pytest.fixture
def releaser(memory_store: InMemoryStore) -> Releaser:
    return Releaser(memory_store)


class TestPolicy:
    """Tests for release_type_for and bump_version."""

    @pytest.mark.parametrize(
        ("tiers", "expected"),
        [
            ([RiskTier.T0, RiskTier.T2], ReleaseType.MAJOR),
            ([RiskTier.T1, RiskTier.T3], ReleaseType.MINOR),
            ([RiskTier.T2, RiskTier.T3], ReleaseType.PATCH),
            ([RiskTier.T3], ReleaseType.PATCH),
        ],
    )
    def test_highest_tier_decides(self, tiers: list[RiskTier], expected: ReleaseType) -> None:
        assert release_type_for(tiers) == expected

    @pytest.mark.parametrize(
        ("version", "release_type", "expected"),
        [
            (None, ReleaseType.MAJOR, "1.0.0"),
            (None, ReleaseType.PATCH, "0.0.1"),
            ("1.4.2", ReleaseType.MAJOR, "2.0.0"),
            ("1.4.2", ReleaseType.MINOR, "1.5.0"),
            ("1.4.2", ReleaseType.PATCH, "1.4.3"),
        ],
    )
    def test_bump_version(self, version: str | None, release_type: ReleaseType, expected: str) -> None:
        assert bump_version(version, release_type) == expected


class TestCanonicalHash:
    """Tests for the canonical release hash."""

    @pytest.mark.asyncio
    async def test_order_independent(self, make_rule: RuleFactory, law_evidence: Evidence) -> None:
        a = await make_rule(law_evidence, RATE_QUOTE, "25")
        b = await make_rule(
            law_evidence,
            THRESHOLD_QUOTE,
            "40000",
            concept_slug="pdv-prag-ulaska",
            value_type=ValueType.THRESHOLD,
        )

        assert compute_release_hash([a, b]) == compute_release_hash([b, a])
        assert len(compute_release_hash([a, b])) == 64

    @pytest.mark.asyncio
    async def test_bookkeeping_excluded(self, make_rule: RuleFactory, law_evidence: Evidence) -> None:
        rule = await make_rule(law_evidence, RATE_QUOTE, "25")
        before = compute_release_hash([rule])

        bookkept = rule.model_copy(
            update={"status": RuleStatus.DEPRECATED, "review_notes": ["checked"], "confidence": 0.5}
        )

        assert compute_release_hash([bookkept]) == before
        assert compute_release_hash([rule.model_copy(update={"value": "24"})]) != before

    @pytest.mark.asyncio
    async def test_canonical_json_is_sorted_and_compact(
        self,
        make_rule: RuleFactory,
        law_evidence: Evidence,
    ) -> None:
        rule = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            applies_when={"op": "eq", "value": "OBRT", "field": "entity_type"},
        )

        text = canonical_json([rule])

        assert '"applies_when":{"field":"entity_type","op":"eq","value":"OBRT"}' in text
        assert '"effective_from":"2024-01-01"' in text

    def test_empty_set_has_stable_hash(self) -> None:
        assert compute_release_hash([]) == compute_release_hash(())


# =============================================================================
# Publishing
# =============================================================================


class TestPublish:
    """Tests for Releaser.publish."""

    @pytest.mark.asyncio
    async def test_major_then_patch(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        t0 = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        t2 = await make_rule(
            law_evidence,
            THRESHOLD_QUOTE,
            "40000",
            concept_slug="pdv-prag-ulaska",
            value_type=ValueType.THRESHOLD,
            risk_tier=RiskTier.T2,
            status=RuleStatus.APPROVED,
            approved_by=settings.pipeline.auto_approver_id,
        )

        first = await releaser.publish()

        assert first.release_type == ReleaseType.MAJOR
        assert first.version == "1.0.0"
        assert first.previous_version is None
        assert first.rule_ids == sorted([t0.id, t2.id])
        assert first.content_hash == compute_release_hash([t0, t2])
        assert [entry.concept_slug for entry in first.changelog] == ["pdv-opca-stopa", "pdv-prag-ulaska"]
        assert first.audit["published"] == 2
        assert first.audit["tier_T0"] == 1
        for rule_id in (t0.id, t2.id):
            stored = await memory_store.get_rule(rule_id)
            assert stored.status == RuleStatus.PUBLISHED
            assert stored.release_id == first.id

        await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            concept_slug="pdv-ugostiteljstvo",
            risk_tier=RiskTier.T2,
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        await make_rule(
            guidance_evidence,
            "Prema uputi",
            "Prema uputi",
            concept_slug="pdv-uputa",
            value_type=ValueType.TEXT,
            risk_tier=RiskTier.T3,
            status=RuleStatus.APPROVED,
            approved_by=settings.pipeline.auto_approver_id,
        )

        second = await releaser.publish()

        assert second.release_type == ReleaseType.PATCH
        assert second.version == "1.0.1"
        assert second.previous_version == "1.0.0"
        assert len(second.rule_ids) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_publish(self, releaser: Releaser) -> None:
        with pytest.raises(EmptyRelease):
            await releaser.publish()

    @pytest.mark.asyncio
    async def test_auto_approved_critical_rule_excluded(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        good = await make_rule(
            law_evidence,
            THRESHOLD_QUOTE,
            "40000",
            concept_slug="pdv-prag-ulaska",
            value_type=ValueType.THRESHOLD,
            risk_tier=RiskTier.T3,
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        critical = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by=settings.pipeline.auto_approver_id,
        )

        release = await releaser.publish()

        assert release.rule_ids == [good.id]
        assert release.release_type == ReleaseType.PATCH
        assert (await memory_store.get_rule(critical.id)).status == RuleStatus.APPROVED

        # The excluded rule does not block later releases
        await make_rule(
            law_evidence,
            THRESHOLD_QUOTE,
            "40000",
            concept_slug="pdv-prag-izlaska",
            value_type=ValueType.THRESHOLD,
            risk_tier=RiskTier.T3,
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        second = await releaser.publish()

        assert critical.id not in second.rule_ids
        assert len(await memory_store.list_releases()) == 2

    @pytest.mark.asyncio
    async def test_contradicting_rules_in_one_batch_held(
        self,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        make_rule: RuleFactory,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        guidance = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-2",
        )
        releaser = Releaser(memory_store, queue=work_queue)

        with pytest.raises(EmptyRelease):
            await releaser.publish()

        assert await memory_store.list_releases() == []
        conflicts = await memory_store.list_conflicts()
        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.SCOPE
        assert set(conflicts[0].rule_ids) == {law.id, guidance.id}
        assert conflicts[0].status.is_open
        for rule_id in (law.id, guidance.id):
            rule = await memory_store.get_rule(rule_id)
            assert rule.status == RuleStatus.APPROVED
            assert rule.conflict_hold
        assert await work_queue.get(Stage.ARBITER, timeout=0.01) == conflicts[0].id

        # A second attempt neither publishes nor records the pair again
        with pytest.raises(EmptyRelease):
            await releaser.publish()
        assert len(await memory_store.list_conflicts()) == 1

    @pytest.mark.asyncio
    async def test_held_and_conflicted_rules_excluded(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        clean = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        held = await make_rule(
            guidance_evidence,
            GUIDANCE_QUOTE,
            "13",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        held.conflict_hold = True
        await memory_store.save_rule(held)
        escalated = await make_rule(
            law_evidence,
            THRESHOLD_QUOTE,
            "40000",
            concept_slug="pdv-prag-ulaska",
            value_type=ValueType.THRESHOLD,
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        conflict = await memory_store.add_conflict(
            RegulatoryConflict(
                conflict_type=ConflictType.SCOPE,
                rule_ids=[escalated.id],
                description="awaiting a human",
            )
        )
        assert conflict.status.is_open

        release = await releaser.publish()

        assert release.rule_ids == [clean.id]
        assert (await memory_store.get_rule(held.id)).status == RuleStatus.APPROVED
        assert (await memory_store.get_rule(escalated.id)).status == RuleStatus.APPROVED

    @pytest.mark.asyncio
    async def test_deprecation_only_release(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        rule = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        first = await releaser.publish()
        stored = await memory_store.get_rule(rule.id)
        lifecycle.transition(stored, RuleStatus.DEPRECATED)
        await memory_store.save_rule(stored)

        second = await releaser.publish()

        assert second.rule_ids == []
        assert second.deprecated_rule_ids == [rule.id]
        assert second.release_type == ReleaseType.MAJOR
        assert second.content_hash == compute_release_hash([])
        assert [entry.change for entry in second.changelog] == ["deprecated"]
        # The first release is unaffected by the deprecation
        assert await releaser.verify(first.id)
        with pytest.raises(EmptyRelease):
            await releaser.publish()

    @pytest.mark.asyncio
    async def test_claim_held_by_another_releaser(
        self,
        releaser: Releaser,
        memory_store: InMemoryStore,
    ) -> None:
        await memory_store.claim("release", "publish", "other-releaser")

        with pytest.raises(ClaimError):
            await releaser.publish()

    @pytest.mark.asyncio
    async def test_concurrent_publishers_release_once(
        self,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        first = Releaser(memory_store, owner="releaser-1")
        second = Releaser(memory_store, owner="releaser-2")

        results = await asyncio.gather(first.publish(), second.publish(), return_exceptions=True)

        assert len(await memory_store.list_releases()) == 1
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], ClaimError | EmptyRelease)

    @pytest.mark.asyncio
    async def test_summary_suggestion_cannot_change_type(
        self,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        fake_llm: FakeLLMProvider,
        law_evidence: Evidence,
    ) -> None:
        await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        fake_llm.queue({"release_type": "patch", "summary": "Minor wording fixes."})
        releaser = Releaser(memory_store, summarizer=ReleaseSummarizer(fake_llm))

        release = await releaser.publish()

        assert release.release_type == ReleaseType.MAJOR
        assert len(fake_llm.calls) == 1

    @pytest.mark.asyncio
    async def test_summarizer_failure_does_not_block(
        self,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        fake_llm: FakeLLMProvider,
        law_evidence: Evidence,
    ) -> None:
        await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        releaser = Releaser(memory_store, summarizer=ReleaseSummarizer(fake_llm))

        release = await releaser.publish()

        assert release.version == "1.0.0"


# =============================================================================
# Verification
# =============================================================================


class TestVerify:
    """Tests for release verification."""

    @pytest.mark.asyncio
    async def test_verify_detects_tampering(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        rule = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        release = await releaser.publish()

        assert await releaser.verify(release.id)
        assert (await releaser.verify_or_raise(release.id)).id == release.id

        memory_store._rules[rule.id] = memory_store._rules[rule.id].model_copy(update={"value": "24"})

        assert not await releaser.verify(release.id)
        with pytest.raises(ReleaseIntegrityError) as exc_info:
            await releaser.verify_or_raise(release.id)
        assert exc_info.value.expected_hash == release.content_hash
        assert exc_info.value.code == "RELEASE_INTEGRITY_VIOLATION"

    @pytest.mark.asyncio
    async def test_recompute_hash(
        self,
        releaser: Releaser,
        make_rule: RuleFactory,
        law_evidence: Evidence,
    ) -> None:
        await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )
        release = await releaser.publish()

        stored, actual = await releaser.recompute_hash(release.id)

        assert stored.id == release.id
        assert actual == release.content_hash
