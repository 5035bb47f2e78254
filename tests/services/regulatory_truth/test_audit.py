"""
Tests for the Integrity Auditor
===============================

Version: 0.1.0
"""

import pytest

from services.regulatory_truth.agents.releaser import Releaser
from services.regulatory_truth.audit import (
    AuditReport,
    AuditStatus,
    IntegrityAuditor,
    InvariantResult,
)
from services.regulatory_truth.models import Evidence, RiskTier, RuleStatus
from services.regulatory_truth.store import InMemoryStore
from tests.conftest import RuleFactory


RATE_QUOTE = "Opća stopa PDV-a iznosi 25%"


@pytest.fixture
def auditor(memory_store: InMemoryStore) -> IntegrityAuditor:
    return IntegrityAuditor(memory_store)


def result_for(report: AuditReport, name: str) -> InvariantResult:
    return next(r for r in report.results if r.name == name)


class TestIntegrityAuditor:
    """Tests for IntegrityAuditor.run."""

    @pytest.mark.asyncio
    async def test_empty_store_passes(self, auditor: IntegrityAuditor) -> None:
        report = await auditor.run()

        assert report.passed
        assert [r.name for r in report.results] == [
            "evidence_hash",
            "quote_in_evidence",
            "no_inference",
            "provenance_coverage",
            "approval_gate",
            "release_hash",
        ]

    @pytest.mark.asyncio
    async def test_released_rule_passes(
        self,
        auditor: IntegrityAuditor,
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
        await Releaser(memory_store).publish()

        report = await auditor.run()

        assert report.passed
        assert set(report.summary().values()) == {"PASS"}
        assert result_for(report, "no_inference").checked == 1
        assert result_for(report, "approval_gate").checked == 1
        assert result_for(report, "release_hash").checked == 1

    @pytest.mark.asyncio
    async def test_tampered_evidence(
        self,
        auditor: IntegrityAuditor,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        memory_store._evidence[law_evidence.id] = law_evidence.model_copy(
            update={"raw_content": law_evidence.raw_content + "\nDopuna."}
        )

        report = await auditor.run()

        assert not report.passed
        assert result_for(report, "evidence_hash").violations == [law_evidence.id]

    @pytest.mark.asyncio
    async def test_quote_missing_from_evidence(
        self,
        auditor: IntegrityAuditor,
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
        [pointer_id] = rule.source_pointer_ids
        memory_store._pointers[pointer_id] = memory_store._pointers[pointer_id].model_copy(
            update={"exact_quote": "Snižena stopa PDV-a iznosi 5% za dječju hranu"}
        )

        report = await auditor.run()

        assert result_for(report, "quote_in_evidence").violations == [f"{rule.id}/{pointer_id}"]

    @pytest.mark.asyncio
    async def test_published_value_not_in_quote(
        self,
        auditor: IntegrityAuditor,
        make_rule: RuleFactory,
        law_evidence: Evidence,
    ) -> None:
        rule = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "24",
            status=RuleStatus.PUBLISHED,
            approved_by="reviewer-1",
        )

        report = await auditor.run()

        no_inference = result_for(report, "no_inference")
        assert no_inference.status == AuditStatus.FAIL
        assert no_inference.violations == [f"{rule.id}/{rule.source_pointer_ids[0]}"]

    @pytest.mark.asyncio
    async def test_unpublished_value_not_checked_for_inference(
        self,
        auditor: IntegrityAuditor,
        make_rule: RuleFactory,
        law_evidence: Evidence,
    ) -> None:
        await make_rule(
            law_evidence,
            RATE_QUOTE,
            "24",
            status=RuleStatus.APPROVED,
            approved_by="reviewer-1",
        )

        report = await auditor.run()

        assert result_for(report, "no_inference").checked == 0

    @pytest.mark.asyncio
    async def test_dangling_pointer(
        self,
        auditor: IntegrityAuditor,
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
        memory_store._rules[rule.id] = memory_store._rules[rule.id].model_copy(
            update={"source_pointer_ids": ["sp_missing"]}
        )

        report = await auditor.run()

        assert result_for(report, "provenance_coverage").violations == [rule.id]

    @pytest.mark.asyncio
    async def test_automated_approval_of_critical_rule(
        self,
        auditor: IntegrityAuditor,
        make_rule: RuleFactory,
        law_evidence: Evidence,
    ) -> None:
        critical = await make_rule(
            law_evidence,
            RATE_QUOTE,
            "25",
            status=RuleStatus.APPROVED,
            approved_by="AUTO_APPROVE_SYSTEM",
        )
        await make_rule(
            law_evidence,
            "Prag za ulazak u sustav PDV-a iznosi 40.000,00 eura",
            "40000",
            concept_slug="pdv-prag-ulaska",
            risk_tier=RiskTier.T2,
            status=RuleStatus.APPROVED,
            approved_by="AUTO_APPROVE_SYSTEM",
        )

        report = await auditor.run()

        approval_gate = result_for(report, "approval_gate")
        assert approval_gate.checked == 1
        assert approval_gate.violations == [critical.id]

    @pytest.mark.asyncio
    async def test_tampered_release(
        self,
        auditor: IntegrityAuditor,
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
        release = await Releaser(memory_store).publish()
        memory_store._rules[rule.id] = memory_store._rules[rule.id].model_copy(
            update={"effective_until": rule.effective_from}
        )

        report = await auditor.run()

        assert result_for(report, "release_hash").violations == [release.id]

    @pytest.mark.asyncio
    async def test_audit_is_read_only(
        self,
        auditor: IntegrityAuditor,
        memory_store: InMemoryStore,
        law_evidence: Evidence,
    ) -> None:
        tampered = law_evidence.model_copy(update={"raw_content": "izmijenjeno"})
        memory_store._evidence[law_evidence.id] = tampered

        await auditor.run()

        assert (await memory_store.get_evidence(law_evidence.id)).raw_content == "izmijenjeno"
