"""
Extractor Agent
===============

Turns one evidence record into source pointers: the cleaned, bounded
content goes to the language model, which returns candidate facts as a
JSON array. Every candidate is validated at the boundary:

1. schema (pydantic ``ExtractionCandidate``)
2. deterministic value checks (domain, ranges, quote length, confidence)
3. quote located in the stored evidence content (exact, then normalized)
4. value stated inside the quote

Candidates failing any check are dropped and logged with the reason;
the rest become ``SourcePointer`` records.

Version: 0.1.0
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from services.regulatory_truth.evidence import EvidenceStore
from services.regulatory_truth.models import (
    AgentRun,
    ContentClass,
    Evidence,
    ExtractionStatus,
    RunStatus,
    SourcePointer,
    Stage,
    ValueType,
    utcnow,
)
from services.regulatory_truth.provenance import find_quote, value_in_quote
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.retry import RateLimiter, is_rate_limited, retrying
from services.regulatory_truth.store.base import PipelineStore
from services.regulatory_truth.validators import KNOWN_DOMAINS, validate_extraction
from shared.config import settings
from shared.llm import LLMError, LLMOutputError, LLMProvider, get_llm_provider
from shared.logging import get_logger


logger = get_logger(__name__)


class ExtractionCandidate(BaseModel):
    """One fact as returned by the model."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    domain: str
    value: str
    value_type: str
    exact_quote: str = Field(min_length=1)
    confidence: float
    article_ref: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        if isinstance(v, int | float):
            return str(v)
        return v


@dataclass
class ExtractionResult:
    evidence_id: str
    status: ExtractionStatus
    pointers: list[SourcePointer] = field(default_factory=list)
    dropped: dict[str, int] = field(default_factory=dict)
    error: str | None = None


def clean_content(evidence: Evidence, max_chars: int | None = None) -> str:
    """Readable text for the model, bounded to ``max_chars``."""
    limit = max_chars or settings.pipeline.extractor_max_chars
    if evidence.content_class == ContentClass.HTML:
        soup = BeautifulSoup(evidence.raw_content, "lxml")
        for element in soup(["script", "style", "nav", "footer", "header", "aside"]):
            element.decompose()
        main = soup.find("main") or soup.find("article") or soup.body or soup
        text = main.get_text(separator="\n", strip=True)
        text = re.sub(r"\n{3,}", "\n\n", text)
    else:
        text = evidence.raw_content
    return text[:limit]


class Extractor:
    """
    Language-model extraction of quoted, typed facts.

    Args:
        store: pipeline store
        queue: receives evidence ids for the Composer after extraction
        provider: LLM provider (configured provider when omitted)
        limiter: minimum delay between consecutive model calls
    """

    EXTRACTION_PROMPT = """You extract regulatory facts from Croatian government publications.

Return ONLY a JSON array. Each element describes one fact:
- domain: one of {domains}
- value: the value exactly as a number or ISO date (YYYY-MM-DD) or short text
- value_type: percentage | currency | count | date | deadline | threshold | interest_rate | exchange_rate | code | boolean | text
- exact_quote: the sentence or phrase copied VERBATIM from the text that states the value
- confidence: 0.0 - 1.0
- article_ref: article or section reference if present, else null

RULES:
- Never compute, convert or infer a value. The value must be written inside exact_quote.
- Copy exact_quote character for character. Do not paraphrase, translate or fix typos.
- Skip facts you cannot quote.
- Return [] when the text contains no regulatory facts."""

    def __init__(
        self,
        store: PipelineStore,
        queue: WorkQueue | None = None,
        provider: LLMProvider | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._provider = provider
        self._limiter = limiter or RateLimiter(settings.pipeline.extractor_call_delay_seconds)
        self._evidence = EvidenceStore(store)

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_llm_provider()

    async def _call_model(self, text: str) -> Any:
        system_prompt = self.EXTRACTION_PROMPT.format(domains=", ".join(sorted(KNOWN_DOMAINS)))
        prompt = f"Extract regulatory facts from this text:\n\n{text}"

        async for attempt in retrying(settings.llm.max_retries, is_rate_limited):
            with attempt:
                await self._limiter.wait()
                async with asyncio.timeout(settings.pipeline.llm_call_timeout_seconds):
                    return await self.provider.generate_json(
                        prompt,
                        system_prompt=system_prompt,
                        temperature=0.0,
                    )

    def _candidates(self, data: Any) -> list[Any]:
        if isinstance(data, dict):
            data = data.get("extractions", data.get("facts"))
        if not isinstance(data, list):
            raise LLMOutputError("Expected a JSON array of extractions", raw_output=str(data)[:500])
        return data

    def build_pointers(self, evidence: Evidence, raw_items: list[Any]) -> tuple[list[SourcePointer], dict[str, int]]:
        """Validate raw model items against the evidence; returns kept pointers and drop counts."""
        kept: list[SourcePointer] = []
        dropped: dict[str, int] = {}

        def drop(reason: str, index: int, **context: Any) -> None:
            dropped[reason] = dropped.get(reason, 0) + 1
            logger.info(
                "extraction_dropped",
                evidence_id=evidence.id,
                index=index,
                reason=reason,
                **context,
            )

        for index, raw in enumerate(raw_items):
            try:
                candidate = ExtractionCandidate.model_validate(raw)
            except ValidationError as e:
                drop("schema", index, errors=e.error_count())
                continue

            domain = candidate.domain.lower()
            try:
                value_type = ValueType(candidate.value_type.lower())
            except ValueError:
                drop("unknown_value_type", index, value_type=candidate.value_type)
                continue

            checks = validate_extraction(
                domain, value_type, candidate.value, candidate.exact_quote, candidate.confidence
            )
            if not checks.valid:
                drop("validation", index, errors=checks.errors)
                continue

            match = find_quote(evidence.raw_content, candidate.exact_quote)
            if not match.found:
                drop("quote_not_found", index, quote=candidate.exact_quote[:120])
                continue

            if not value_in_quote(candidate.value, candidate.exact_quote, value_type):
                drop("value_not_in_quote", index, value=candidate.value)
                continue

            kept.append(
                SourcePointer(
                    evidence_id=evidence.id,
                    exact_quote=candidate.exact_quote,
                    extracted_value=candidate.value,
                    value_type=value_type,
                    domain=domain,
                    confidence=candidate.confidence,
                    match_type=match.match_type,
                    start_offset=match.start,
                    end_offset=match.end,
                    article_ref=candidate.article_ref,
                )
            )
        return kept, dropped

    async def extract(self, evidence_id: str) -> ExtractionResult:
        """
        Extract pointers from one claimed evidence record.

        Model failures are recorded on a FAILED ``AgentRun``; the evidence
        goes back to PENDING until ``extractor_max_attempts`` is reached,
        then it is marked FAILED.

        Raises:
            EvidenceIntegrityError: stored content no longer matches its hash
        """
        evidence = await self._evidence.verify(evidence_id)
        if evidence.extraction_status in (ExtractionStatus.EXTRACTED, ExtractionStatus.FAILED):
            logger.info(
                "extraction_skipped",
                evidence_id=evidence_id,
                status=evidence.extraction_status.value,
            )
            return ExtractionResult(evidence_id, evidence.extraction_status)

        attempt = evidence.extraction_attempts + 1
        run = AgentRun(stage=Stage.EXTRACTOR, subject_id=evidence_id, attempt=attempt)
        await self._store.save_run(run)

        try:
            data = await self._call_model(clean_content(evidence))
            raw_items = self._candidates(data)
        except (LLMError, TimeoutError) as e:
            return await self._fail(evidence, run, e)

        pointers, dropped = self.build_pointers(evidence, raw_items)
        await self._store.add_pointers(pointers)
        await self._store.update_evidence(
            evidence_id,
            extraction_status=ExtractionStatus.EXTRACTED,
            extraction_attempts=attempt,
        )

        run.status = RunStatus.COMPLETED
        run.finished_at = utcnow()
        run.output_summary = {
            "candidates": len(raw_items),
            "pointers": len(pointers),
            "dropped": dropped,
        }
        await self._store.save_run(run)

        if pointers and self._queue is not None:
            await self._queue.put(Stage.COMPOSER, evidence_id)

        logger.info(
            "extraction_completed",
            evidence_id=evidence_id,
            candidates=len(raw_items),
            pointers=len(pointers),
            dropped=sum(dropped.values()),
        )
        return ExtractionResult(evidence_id, ExtractionStatus.EXTRACTED, pointers, dropped)

    async def _fail(self, evidence: Evidence, run: AgentRun, error: BaseException) -> ExtractionResult:
        attempts = run.attempt
        exhausted = attempts >= settings.pipeline.extractor_max_attempts
        status = ExtractionStatus.FAILED if exhausted else ExtractionStatus.PENDING
        await self._store.update_evidence(
            evidence.id,
            extraction_status=status,
            extraction_attempts=attempts,
        )

        message = f"{type(error).__name__}: {error}"
        run.status = RunStatus.FAILED
        run.error = message
        run.finished_at = utcnow()
        await self._store.save_run(run)

        logger.warning(
            "extraction_failed",
            evidence_id=evidence.id,
            attempt=attempts,
            exhausted=exhausted,
            error=message,
        )
        return ExtractionResult(evidence.id, status, error=message)

    async def run_batch(self, owner: str, limit: int = 10) -> list[ExtractionResult]:
        """Claim and process up to ``limit`` pending evidence records in order."""
        claimed = await self._store.claim_pending_evidence(owner, limit=limit)
        results = []
        for evidence in claimed:
            try:
                results.append(await self.extract(evidence.id))
            finally:
                await self._store.release_claim("evidence", evidence.id, owner)
        return results
