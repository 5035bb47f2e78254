"""
Test Configuration
==================

Pytest fixtures for the regulatory truth pipeline tests.
"""

import json
import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from datetime import date
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["ENVIRONMENT"] = "testing"
os.environ["PIPELINE_STORE_BACKEND"] = "memory"
os.environ["PIPELINE_QUEUE_BACKEND"] = "memory"
os.environ["PIPELINE_REQUEST_DELAY_SECONDS"] = "0"
os.environ["PIPELINE_EXTRACTOR_CALL_DELAY_SECONDS"] = "0"
os.environ["PIPELINE_RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["PIPELINE_RATE_LIMIT_BASE_DELAY_SECONDS"] = "0"
os.environ["PIPELINE_RUN_WORKERS"] = "false"

from services.regulatory_truth.evidence import EvidenceStore  # noqa: E402
from services.regulatory_truth.models import (  # noqa: E402
    AuthorityLevel,
    Evidence,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    SourcePointer,
    ValueType,
)
from services.regulatory_truth.queues import InMemoryWorkQueue  # noqa: E402
from services.regulatory_truth.store import InMemoryStore  # noqa: E402
from shared.llm import (  # noqa: E402
    LLMError,
    LLMMessage,
    LLMProvider,
    LLMResponse,
    reset_llm_provider,
    set_llm_provider,
)


PDV_LAW_URL = "https://narodne-novine.nn.hr/clanci/sluzbeni/2023_12_114_1.html"
PDV_GUIDANCE_URL = "https://porezna-uprava.gov.hr/hr/vijesti/pdv-stopa/1234"

PDV_LAW_TEXT = (
    "Zakon o porezu na dodanu vrijednost\n"
    "Članak 38.\n"
    "(1) Opća stopa PDV-a iznosi 25% i primjenjuje se na poreznu osnovicu.\n"
    "(2) Prag za ulazak u sustav PDV-a iznosi 40.000,00 eura.\n"
)

PDV_GUIDANCE_TEXT = (
    "Obavijest poreznim obveznicima\n"
    "Prema uputi, stopa PDV-a iznosi 13% za ugostiteljske usluge.\n"
)


class FakeLLMProvider(LLMProvider):
    """Scripted provider: returns queued responses in order, raising queued exceptions."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses: list[Any] = list(responses or [])
        self.calls: list[list[LLMMessage]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model(self) -> str:
        return "fake-model"

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        stop_sequences: list[str] | None = None,
    ) -> LLMResponse:
        self.calls.append(messages)
        if not self.responses:
            raise LLMError("No scripted response left", provider=self.name)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        content = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(content=content, model=self.model, provider=self.name)

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "provider": self.name}


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def work_queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


@pytest.fixture
def evidence_store(memory_store: InMemoryStore) -> EvidenceStore:
    return EvidenceStore(memory_store)


@pytest.fixture
def fake_llm() -> Generator[FakeLLMProvider, None, None]:
    """Fake provider installed as the global provider for the test."""
    provider = FakeLLMProvider()
    set_llm_provider(provider)
    yield provider
    reset_llm_provider()


@pytest_asyncio.fixture
async def law_evidence(evidence_store: EvidenceStore) -> Evidence:
    """Official gazette article stating the PDV rate and threshold."""
    return await evidence_store.put(
        PDV_LAW_URL,
        PDV_LAW_TEXT,
        "text/plain",
        published_at=date(2023, 12, 1),
    )


@pytest_asyncio.fixture
async def guidance_evidence(evidence_store: EvidenceStore) -> Evidence:
    """Tax administration notice stating a different rate."""
    return await evidence_store.put(
        PDV_GUIDANCE_URL,
        PDV_GUIDANCE_TEXT,
        "text/plain",
        published_at=date(2024, 3, 1),
    )


PointerFactory = Callable[..., Awaitable[SourcePointer]]
RuleFactory = Callable[..., Awaitable[RegulatoryRule]]


@pytest.fixture
def make_pointer(memory_store: InMemoryStore) -> PointerFactory:
    """Store a source pointer on an evidence record."""

    async def factory(
        evidence: Evidence,
        quote: str,
        value: str,
        value_type: ValueType = ValueType.PERCENTAGE,
        domain: str = "pdv",
        confidence: float = 0.95,
    ) -> SourcePointer:
        pointer = SourcePointer(
            evidence_id=evidence.id,
            exact_quote=quote,
            extracted_value=value,
            value_type=value_type,
            domain=domain,
            confidence=confidence,
        )
        await memory_store.add_pointers([pointer])
        return pointer

    return factory


@pytest.fixture
def make_rule(memory_store: InMemoryStore, make_pointer: PointerFactory) -> RuleFactory:
    """Store a rule backed by one pointer quoting ``quote`` from ``evidence``."""

    async def factory(
        evidence: Evidence,
        quote: str,
        value: str,
        *,
        concept_slug: str = "pdv-opca-stopa",
        value_type: ValueType = ValueType.PERCENTAGE,
        authority_level: AuthorityLevel = AuthorityLevel.LAW,
        risk_tier: RiskTier = RiskTier.T0,
        status: RuleStatus = RuleStatus.DRAFT,
        approved_by: str | None = None,
        confidence: float = 0.95,
        applies_when: dict[str, Any] | None = None,
        effective_from: date = date(2024, 1, 1),
        effective_until: date | None = None,
    ) -> RegulatoryRule:
        pointer = await make_pointer(evidence, quote, value, value_type=value_type, confidence=confidence)
        rule = RegulatoryRule(
            concept_slug=concept_slug,
            title=f"{concept_slug}: {value}",
            applies_when=applies_when or {"op": "true"},
            value=value,
            value_type=value_type,
            authority_level=authority_level,
            risk_tier=risk_tier,
            status=status,
            confidence=confidence,
            effective_from=effective_from,
            effective_until=effective_until,
            source_pointer_ids=[pointer.id],
            approved_by=approved_by,
        )
        await memory_store.add_rule(rule)
        await memory_store.assign_pointers([pointer.id], rule.id)
        return rule

    return factory


@pytest_asyncio.fixture
async def regulatory_truth_client(
    memory_store: InMemoryStore,
    work_queue: InMemoryWorkQueue,
    fake_llm: FakeLLMProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client for the Regulatory Truth Service on an in-memory pipeline."""
    from services.regulatory_truth.main import app
    from services.regulatory_truth.pipeline import Pipeline

    app.state.pipeline = Pipeline(
        store=memory_store,
        queue=work_queue,
        provider=fake_llm,
        worker_id="test",
    )
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    await app.state.pipeline.sentinel.close()
    app.state.pipeline = None
