"""
Tests for the Composer Agent
============================

Tests for:
- Rule creation only from grounded pointers
- Source conflicts between disagreeing pointers
- Risk tier policy and drafter validation
- Corroboration of existing rules

Version: 0.1.0
"""

from datetime import date

import pytest

from services.regulatory_truth.agents.composer import (
    COMPOSITION_CLAIM,
    SLUG_PATTERN,
    Composer,
    RuleDrafter,
    cluster_pointers,
    derive_concept_slug,
    risk_tier_for,
)
from services.regulatory_truth.errors import InferenceViolation, MissingProvenance
from services.regulatory_truth.evidence import EvidenceStore
from services.regulatory_truth.models import (
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    Evidence,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    Stage,
    ValueType,
)
from services.regulatory_truth.queues import InMemoryWorkQueue
from services.regulatory_truth.store import InMemoryStore
from tests.conftest import FakeLLMProvider, PointerFactory


RATE_QUOTE = "Opća stopa PDV-a iznosi 25%"


@pytest.fixture
def composer(memory_store: InMemoryStore, work_queue: InMemoryWorkQueue) -> Composer:
    return Composer(memory_store, work_queue)


# =============================================================================
# Policy helpers
# =============================================================================


class TestRiskTierPolicy:
    """Tests for risk_tier_for."""

    @pytest.mark.parametrize(
        ("value_type", "expected"),
        [
            (ValueType.PERCENTAGE, RiskTier.T0),
            (ValueType.THRESHOLD, RiskTier.T0),
            (ValueType.DEADLINE, RiskTier.T1),
            (ValueType.CODE, RiskTier.T2),
            (ValueType.TEXT, RiskTier.T3),
        ],
    )
    def test_floor(self, value_type: ValueType, expected: RiskTier) -> None:
        assert risk_tier_for(value_type) == expected

    def test_suggestion_cannot_lower_tier(self) -> None:
        assert risk_tier_for(ValueType.PERCENTAGE, RiskTier.T3) == RiskTier.T0

    def test_suggestion_can_raise_tier(self) -> None:
        assert risk_tier_for(ValueType.TEXT, RiskTier.T1) == RiskTier.T1


class TestClustering:
    """Tests for cluster_pointers."""

    @pytest.mark.asyncio
    async def test_similar_quotes_cluster_despite_values(
        self,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25")
        b = await make_pointer(guidance_evidence, "stopa PDV-a iznosi 13%", "13")

        clusters = cluster_pointers([a, b], threshold=0.35)

        assert len(clusters) == 1
        assert clusters[0].disagrees()

    @pytest.mark.asyncio
    async def test_value_types_never_mix(
        self,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25")
        b = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25", value_type=ValueType.THRESHOLD)

        assert len(cluster_pointers([a, b], threshold=0.0)) == 2

    @pytest.mark.asyncio
    async def test_unrelated_quotes_split(
        self,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, "Opća stopa PDV-a iznosi 25%", "25")
        b = await make_pointer(
            law_evidence,
            "Prag za ulazak u sustav PDV-a iznosi 40.000,00 eura",
            "40000",
        )

        assert len(cluster_pointers([a, b], threshold=0.35)) == 2

    @pytest.mark.asyncio
    async def test_derived_slug_is_kebab_ascii(
        self,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        pointer = await make_pointer(law_evidence, "Opća stopa PDV-a iznosi 25%", "25")

        slug = derive_concept_slug("pdv", [pointer])

        assert SLUG_PATTERN.match(slug)
        assert slug.startswith("pdv-")


# =============================================================================
# Rule composition
# =============================================================================


class TestComposeRule:
    """Tests for Composer.compose_rule."""

    @pytest.mark.asyncio
    async def test_grounded_pointer_creates_draft_rule(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        law_evidence: Evidence,
    ) -> None:
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "25")

        rule = await composer.compose_rule([pointer])

        assert rule.status == RuleStatus.DRAFT
        assert rule.value == "25"
        assert rule.value_type == ValueType.PERCENTAGE
        assert rule.risk_tier == RiskTier.T0
        assert rule.authority_level == AuthorityLevel.LAW
        assert rule.source_pointer_ids == [pointer.id]
        assert rule.applies_when == {"op": "true"}
        assert rule.effective_from == date(2023, 12, 1)

        stored_pointer = (await memory_store.get_pointers([pointer.id]))[0]
        assert stored_pointer.rule_id == rule.id
        assert await work_queue.get(Stage.REVIEWER, timeout=0.01) == rule.id
        assert [c.slug for c in await memory_store.list_concepts()] == [rule.concept_slug]

    @pytest.mark.asyncio
    async def test_inferred_value_is_refused(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        """A value that is not written in the quote never becomes a rule."""
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "30")

        with pytest.raises(InferenceViolation) as exc_info:
            await composer.compose_rule([pointer])

        assert exc_info.value.pointer_ids == [pointer.id]
        assert exc_info.value.value == "30"
        assert await memory_store.list_rules() == []

    @pytest.mark.asyncio
    async def test_no_pointers_is_missing_provenance(self, composer: Composer) -> None:
        with pytest.raises(MissingProvenance):
            await composer.compose_rule([])

    def test_rule_model_requires_pointers(self) -> None:
        with pytest.raises(MissingProvenance):
            RegulatoryRule(
                concept_slug="pdv-opca-stopa",
                title="PDV",
                value="25",
                value_type=ValueType.PERCENTAGE,
                authority_level=AuthorityLevel.LAW,
                risk_tier=RiskTier.T0,
                confidence=0.9,
                effective_from=date(2024, 1, 1),
                source_pointer_ids=[],
            )

    @pytest.mark.asyncio
    async def test_ungrounded_pointers_are_excluded(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        good = await make_pointer(law_evidence, RATE_QUOTE, "25")
        missing = await make_pointer(law_evidence, "stopa PDV-a iznosi 25% uvijek", "25")

        rule = await composer.compose_rule([good, missing])

        assert rule.source_pointer_ids == [good.id]

    @pytest.mark.asyncio
    async def test_confidence_is_weakest_pointer(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        a = await make_pointer(law_evidence, RATE_QUOTE, "25", confidence=0.95)
        b = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25", confidence=0.8)

        rule = await composer.compose_rule([a, b])

        assert rule.confidence == 0.8


class TestDrafter:
    """Tests for drafter proposals."""

    @pytest.mark.asyncio
    async def test_valid_draft_is_used(
        self,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        fake_llm: FakeLLMProvider,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        fake_llm.queue(
            {
                "concept_slug": "pdv-opca-stopa",
                "title": "Opća stopa PDV-a",
                "applies_when": {"op": "cmp", "field": "entity.vat_status", "cmp": "==", "value": "IN_VAT"},
                "effective_from": "2024-01-01",
                "risk_tier": "T3",
            }
        )
        composer = Composer(memory_store, work_queue, drafter=RuleDrafter(fake_llm))
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "25")

        rule = await composer.compose_rule([pointer])

        assert rule.concept_slug == "pdv-opca-stopa"
        assert rule.title == "Opća stopa PDV-a"
        assert rule.applies_when["op"] == "cmp"
        assert rule.effective_from == date(2024, 1, 1)
        assert rule.risk_tier == RiskTier.T0

    @pytest.mark.asyncio
    async def test_invalid_draft_fields_fall_back(
        self,
        memory_store: InMemoryStore,
        fake_llm: FakeLLMProvider,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        fake_llm.queue(
            {
                "concept_slug": "Opća Stopa!",
                "applies_when": {"op": "xor"},
                "effective_from": "2024-06-01",
                "effective_until": "2024-01-01",
            }
        )
        composer = Composer(memory_store, drafter=RuleDrafter(fake_llm))
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "25")

        rule = await composer.compose_rule([pointer])

        assert SLUG_PATTERN.match(rule.concept_slug)
        assert rule.applies_when == {"op": "true"}
        assert rule.effective_until is None
        assert len(rule.review_notes) == 2

    @pytest.mark.asyncio
    async def test_drafter_failure_uses_derivation(
        self,
        memory_store: InMemoryStore,
        fake_llm: FakeLLMProvider,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        composer = Composer(memory_store, drafter=RuleDrafter(fake_llm))
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "25")

        rule = await composer.compose_rule([pointer])

        assert len(fake_llm.calls) == 1
        assert rule.value == "25"


# =============================================================================
# Pending composition
# =============================================================================


class TestComposePending:
    """Tests for Composer.compose_pending and run."""

    @pytest.mark.asyncio
    async def test_disagreeing_sources_raise_conflict(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        work_queue: InMemoryWorkQueue,
        law_evidence: Evidence,
        guidance_evidence: Evidence,
    ) -> None:
        law = await make_pointer(law_evidence, "stopa PDV-a iznosi 25%", "25")
        guidance = await make_pointer(guidance_evidence, "stopa PDV-a iznosi 13%", "13")

        report = await composer.compose_pending()

        assert report.rules == []
        assert len(report.conflicts) == 1
        conflict = report.conflicts[0]
        assert conflict.conflict_type == ConflictType.SOURCE
        assert conflict.status == ConflictStatus.OPEN
        assert set(conflict.source_pointer_ids) == {law.id, guidance.id}
        assert await work_queue.get(Stage.ARBITER, timeout=0.01) == conflict.id

        # Held pointers are not regrouped while the conflict is open
        again = await composer.compose_pending()
        assert again.conflicts == [] and again.rules == []
        assert await memory_store.list_rules() == []

    @pytest.mark.asyncio
    async def test_inferred_cluster_is_rejected(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        law_evidence: Evidence,
    ) -> None:
        pointer = await make_pointer(law_evidence, RATE_QUOTE, "30")

        report = await composer.compose_pending()

        assert report.rules == []
        assert report.rejected == [pointer.id]

    @pytest.mark.asyncio
    async def test_corroborating_pointer_joins_draft(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        evidence_store: EvidenceStore,
        law_evidence: Evidence,
    ) -> None:
        first = await make_pointer(law_evidence, RATE_QUOTE, "25")
        rule = await composer.compose_rule([first])
        mirror = await evidence_store.put(
            "https://narodne-novine.nn.hr/clanci/sluzbeni/2024_01_1_1.html",
            f"Pročišćeni tekst. {RATE_QUOTE}.",
            "text/plain",
        )
        second = await make_pointer(mirror, RATE_QUOTE, "25")

        report = await composer.compose_pending()

        assert [r.id for r in report.rules] == [rule.id]
        stored = await memory_store.get_rule(rule.id)
        assert stored.source_pointer_ids == [first.id, second.id]
        assert len(await memory_store.list_rules()) == 1

    @pytest.mark.asyncio
    async def test_approved_rule_content_unchanged_by_corroboration(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        evidence_store: EvidenceStore,
        law_evidence: Evidence,
    ) -> None:
        first = await make_pointer(law_evidence, RATE_QUOTE, "25")
        rule = await composer.compose_rule([first])
        rule.status = RuleStatus.APPROVED
        rule.approved_by = "reviewer-1"
        await memory_store.save_rule(rule)
        mirror = await evidence_store.put("https://narodne-novine.nn.hr/b", f"{RATE_QUOTE}.", "text/plain")
        second = await make_pointer(mirror, RATE_QUOTE, "25")

        await composer.compose_pending()

        stored = await memory_store.get_rule(rule.id)
        assert stored.source_pointer_ids == [first.id]
        assert (await memory_store.get_pointers([second.id]))[0].rule_id == rule.id

    @pytest.mark.asyncio
    async def test_run_skips_when_claim_held(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        await make_pointer(law_evidence, RATE_QUOTE, "25")
        kind, subject = COMPOSITION_CLAIM
        await memory_store.claim(kind, subject, "other-worker")

        report = await composer.run("worker-1")

        assert report.rules == []
        assert await memory_store.list_rules() == []

    @pytest.mark.asyncio
    async def test_run_releases_claim(
        self,
        composer: Composer,
        make_pointer: PointerFactory,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        await make_pointer(law_evidence, RATE_QUOTE, "25")

        report = await composer.run("worker-1")

        assert len(report.rules) == 1
        kind, subject = COMPOSITION_CLAIM
        assert await memory_store.claim(kind, subject, "worker-2")
