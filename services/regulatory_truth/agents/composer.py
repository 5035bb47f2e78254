"""
Composer Agent
==============

Groups ungrouped source pointers into draft rules.

Grouping: pointers are bucketed by domain and value type, then clustered
greedily by token Jaccard similarity of their quotes (numbers excluded,
so sources disagreeing on a value still land in one cluster). A cluster
whose pointers disagree on the value becomes a ``source`` conflict
instead of a rule.

Each remaining cluster becomes one DRAFT rule. An optional drafter (the
language model) may propose the concept slug, title, AppliesWhen
predicate, effective date and a risk tier; every proposal is validated
and the risk tier can only be raised above the policy floor.

Version: 0.1.0
"""

import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from services.regulatory_truth.dsl import parse_predicate, to_dict
from services.regulatory_truth.errors import InferenceViolation, InvalidPredicate, MissingProvenance
from services.regulatory_truth.models import (
    AuthorityLevel,
    Concept,
    ConflictType,
    Evidence,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    SourcePointer,
    Stage,
    ValueType,
)
from services.regulatory_truth.provenance import canonical_value, check_pointer, normalize_for_match
from services.regulatory_truth.queues import WorkQueue
from services.regulatory_truth.registry import derive_authority
from services.regulatory_truth.store.base import PipelineStore
from services.regulatory_truth.validators import values_agree
from shared.config import settings
from shared.llm import LLMError, LLMProvider, get_llm_provider
from shared.logging import get_logger


logger = get_logger(__name__)


# Minimum tier by value type; money, rates, dates and thresholds are T0/T1
TIER_POLICY: dict[ValueType, RiskTier] = {
    ValueType.PERCENTAGE: RiskTier.T0,
    ValueType.CURRENCY: RiskTier.T0,
    ValueType.THRESHOLD: RiskTier.T0,
    ValueType.INTEREST_RATE: RiskTier.T0,
    ValueType.DEADLINE: RiskTier.T1,
    ValueType.DATE: RiskTier.T1,
    ValueType.EXCHANGE_RATE: RiskTier.T1,
    ValueType.COUNT: RiskTier.T1,
    ValueType.CODE: RiskTier.T2,
    ValueType.BOOLEAN: RiskTier.T2,
    ValueType.TEXT: RiskTier.T3,
}

COMPOSITION_CLAIM = ("composition", "ungrouped")

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

STOPWORDS = frozenset(
    {
        "je", "i", "u", "na", "za", "od", "do", "se", "su", "te", "ili", "koji", "koja",
        "koje", "kojima", "a", "s", "sa", "po", "o", "kao", "iz", "pri", "biti", "što",
        "ako", "nije", "li", "će", "bi", "the", "and", "of", "to", "in", "is", "for",
        "iznosi", "godine", "članak", "stavak", "točka",
    }
)

_WORD = re.compile(r"[^\W\d_]{3,}", re.UNICODE)


def risk_tier_for(value_type: ValueType, suggested: RiskTier | None = None) -> RiskTier:
    """Policy floor, raised (never lowered) by a suggestion."""
    floor = TIER_POLICY[value_type]
    if suggested is not None and suggested.rank < floor.rank:
        return suggested
    return floor


def quote_tokens(quote: str) -> set[str]:
    words = _WORD.findall(normalize_for_match(quote).lower())
    return {w for w in words if w not in STOPWORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def ascii_slug(text: str) -> str:
    folded = unicodedata.normalize("NFKD", text.replace("đ", "dj").replace("Đ", "Dj"))
    folded = folded.encode("ascii", "ignore").decode("ascii").lower()
    return re.sub(r"[^a-z0-9]+", "-", folded).strip("-")


def derive_concept_slug(domain: str, pointers: list[SourcePointer]) -> str:
    """Domain plus the three most frequent salient quote tokens."""
    counts: Counter[str] = Counter()
    for pointer in pointers:
        counts.update(quote_tokens(pointer.exact_quote))
    salient = [word for word, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]
    return ascii_slug("-".join([domain, *salient])) or ascii_slug(domain)


@dataclass
class PointerCluster:
    domain: str
    value_type: ValueType
    pointers: list[SourcePointer] = field(default_factory=list)
    tokens: set[str] = field(default_factory=set)

    def add(self, pointer: SourcePointer) -> None:
        self.pointers.append(pointer)
        self.tokens |= quote_tokens(pointer.exact_quote)

    @property
    def pointer_ids(self) -> list[str]:
        return [p.id for p in self.pointers]

    def disagrees(self) -> bool:
        first = self.pointers[0].extracted_value
        return any(not values_agree(first, p.extracted_value) for p in self.pointers[1:])


def cluster_pointers(pointers: list[SourcePointer], threshold: float | None = None) -> list[PointerCluster]:
    """Greedy clustering by domain, value type and quote similarity."""
    threshold = settings.pipeline.grouping_similarity_threshold if threshold is None else threshold
    clusters: list[PointerCluster] = []
    for pointer in sorted(pointers, key=lambda p: (p.domain, p.created_at, p.id)):
        tokens = quote_tokens(pointer.exact_quote)
        best: PointerCluster | None = None
        best_score = threshold
        for cluster in clusters:
            if cluster.domain != pointer.domain or cluster.value_type != pointer.value_type:
                continue
            score = jaccard(tokens, cluster.tokens)
            if score >= best_score:
                best, best_score = cluster, score
        if best is None:
            best = PointerCluster(domain=pointer.domain, value_type=pointer.value_type)
            clusters.append(best)
        best.add(pointer)
    return clusters


# =============================================================================
# Drafter
# =============================================================================


class RuleDraft(BaseModel):
    """Drafter proposal; every field optional and validated before use."""

    model_config = ConfigDict(extra="ignore")

    concept_slug: str | None = None
    title: str | None = None
    applies_when: dict[str, Any] | None = None
    effective_from: date | None = None
    effective_until: date | None = None
    risk_tier: RiskTier | None = None


class RuleDrafter:
    """Asks the language model to describe a cluster as a rule."""

    DRAFT_PROMPT = """You turn quoted regulatory facts into a machine-evaluable rule.

Respond with a JSON object:
{
  "concept_slug": "kebab-case topic, e.g. pdv-standard-rate",
  "title": "short human title",
  "applies_when": AppliesWhen predicate,
  "effective_from": "YYYY-MM-DD" or null,
  "effective_until": "YYYY-MM-DD" or null,
  "risk_tier": "T0" | "T1" | "T2" | "T3"
}

AppliesWhen operators (JSON objects keyed by "op"):
- {"op": "true"} / {"op": "false"}
- {"op": "and" | "or", "args": [...]} / {"op": "not", "arg": {...}}
- {"op": "cmp", "field": "entity.revenue", "cmp": "<" | "<=" | "==" | "!=" | ">=" | ">", "value": ...}
- {"op": "in", "field": "...", "values": [...]}
- {"op": "exists", "field": "..."}
- {"op": "between", "field": "...", "gte": ..., "lte": ...}
- {"op": "matches", "field": "...", "pattern": "regex"}
- {"op": "date_in_effect", "field": "as_of"}

Use {"op": "true"} when the quotes state no condition. Do not invent conditions."""

    def __init__(self, provider: LLMProvider | None = None) -> None:
        self._provider = provider

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_llm_provider()

    async def draft(self, cluster: PointerCluster) -> RuleDraft:
        quotes = "\n".join(
            f"- [{p.value_type.value}] value={p.extracted_value!r}: {p.exact_quote}" for p in cluster.pointers
        )
        data = await self.provider.generate_json(
            f"Domain: {cluster.domain}\nQuoted facts:\n{quotes}",
            system_prompt=self.DRAFT_PROMPT,
            temperature=0.0,
        )
        return RuleDraft.model_validate(data if isinstance(data, dict) else {})


# =============================================================================
# Composer
# =============================================================================


@dataclass
class CompositionReport:
    rules: list[RegulatoryRule] = field(default_factory=list)
    conflicts: list[RegulatoryConflict] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


class Composer:
    """
    Draft rule synthesis from source pointers.

    Args:
        store: pipeline store
        queue: receives rule ids for the Reviewer and conflict ids for the Arbiter
        drafter: optional model-backed drafter; deterministic derivation otherwise
    """

    def __init__(
        self,
        store: PipelineStore,
        queue: WorkQueue | None = None,
        drafter: RuleDrafter | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._drafter = drafter

    async def _blocked_pointer_ids(self) -> set[str]:
        """Pointers held by open source conflicts or rejected in resolved ones."""
        blocked: set[str] = set()
        for conflict in await self._store.list_conflicts():
            if conflict.conflict_type != ConflictType.SOURCE:
                continue
            if conflict.status.is_open:
                blocked.update(conflict.source_pointer_ids)
            elif conflict.resolution is not None:
                blocked.update(conflict.resolution.comparison.get("losing_pointer_ids", []))
        return blocked

    async def run(self, owner: str) -> CompositionReport:
        """
        Compose under the global composition claim.

        Grouping spans all ungrouped pointers, so only one composer may
        group at a time; a composer that loses the claim does nothing.
        """
        kind, subject = COMPOSITION_CLAIM
        if not await self._store.claim(kind, subject, owner):
            logger.debug("composition_claim_held", owner=owner)
            return CompositionReport()
        try:
            return await self.compose_pending()
        finally:
            await self._store.release_claim(kind, subject, owner)

    async def compose_pending(self, evidence_id: str | None = None) -> CompositionReport:
        """Group and compose all ungrouped pointers (optionally of one evidence record)."""
        pointers = await self._store.list_pointers(evidence_id=evidence_id, ungrouped_only=True)
        blocked = await self._blocked_pointer_ids()
        pointers = [p for p in pointers if p.id not in blocked]

        report = CompositionReport()
        for cluster in cluster_pointers(pointers):
            if len(cluster.pointers) > 1 and cluster.disagrees():
                report.conflicts.append(await self._raise_source_conflict(cluster))
                continue
            try:
                rule = await self.compose_rule(cluster.pointers)
            except (InferenceViolation, MissingProvenance) as e:
                report.rejected.extend(cluster.pointer_ids)
                logger.warning(
                    "composition_rejected",
                    domain=cluster.domain,
                    pointer_ids=cluster.pointer_ids,
                    code=e.code,
                    error=e.message,
                )
                continue
            report.rules.append(rule)

        logger.info(
            "composition_completed",
            pointers=len(pointers),
            rules=len(report.rules),
            conflicts=len(report.conflicts),
            rejected=len(report.rejected),
        )
        return report

    async def _raise_source_conflict(self, cluster: PointerCluster) -> RegulatoryConflict:
        values = sorted({canonical_value(p.extracted_value) for p in cluster.pointers})
        conflict = RegulatoryConflict(
            conflict_type=ConflictType.SOURCE,
            concept_slug=derive_concept_slug(cluster.domain, cluster.pointers),
            source_pointer_ids=cluster.pointer_ids,
            description=f"Sources disagree on {cluster.domain} {cluster.value_type.value}: {', '.join(values)}",
        )
        await self._store.add_conflict(conflict)
        if self._queue is not None:
            await self._queue.put(Stage.ARBITER, conflict.id)
        logger.warning(
            "source_conflict_detected",
            conflict_id=conflict.id,
            pointer_ids=cluster.pointer_ids,
            values=values,
        )
        return conflict

    async def _draft(self, cluster: PointerCluster) -> RuleDraft:
        if self._drafter is None:
            return RuleDraft()
        try:
            return await self._drafter.draft(cluster)
        except (LLMError, ValidationError) as e:
            logger.warning("rule_draft_failed", domain=cluster.domain, error=str(e))
            return RuleDraft()

    async def _evidence_for(self, pointers: list[SourcePointer]) -> dict[str, Evidence]:
        evidence: dict[str, Evidence] = {}
        for pointer in pointers:
            if pointer.evidence_id not in evidence:
                evidence[pointer.evidence_id] = await self._store.get_evidence(pointer.evidence_id)
        return evidence

    async def compose_rule(self, pointers: list[SourcePointer]) -> RegulatoryRule:
        """
        Create one DRAFT rule backed by ``pointers``.

        Raises:
            MissingProvenance: no pointers given
            InferenceViolation: no pointer's quote states the rule value
        """
        if not pointers:
            raise MissingProvenance()

        domain = pointers[0].domain
        value_type = pointers[0].value_type
        cluster = PointerCluster(domain=domain, value_type=value_type)
        for pointer in pointers:
            cluster.add(pointer)

        value = canonical_value(pointers[0].extracted_value)
        evidence = await self._evidence_for(pointers)

        grounded: list[SourcePointer] = []
        for pointer in pointers:
            check = check_pointer(pointer, evidence[pointer.evidence_id], value=value)
            if check.grounded:
                grounded.append(pointer)
            else:
                logger.warning(
                    "pointer_excluded",
                    pointer_id=pointer.id,
                    reasons=check.reasons,
                    value=value,
                )
        if not grounded:
            raise InferenceViolation([p.id for p in pointers], value)

        draft = await self._draft(cluster)
        notes: list[str] = []

        slug = draft.concept_slug.strip().lower() if draft.concept_slug else ""
        if not SLUG_PATTERN.match(slug):
            slug = derive_concept_slug(domain, grounded)

        applies_when: dict[str, Any] = {"op": "true"}
        if draft.applies_when is not None:
            try:
                applies_when = to_dict(parse_predicate(draft.applies_when))
            except InvalidPredicate as e:
                notes.append(f"drafted applies_when rejected: {e.message}")
                logger.warning("drafted_predicate_invalid", concept_slug=slug, errors=e.errors)

        sources = [evidence[p.evidence_id] for p in grounded]
        authority = min(
            (derive_authority(ev.url, ev.authority_hint) for ev in sources),
            key=lambda level: level.rank,
            default=AuthorityLevel.PRACTICE,
        )
        effective_from = draft.effective_from or min(ev.source_date for ev in sources)
        effective_until = draft.effective_until
        if effective_until is not None and effective_until < effective_from:
            notes.append("drafted effective_until precedes effective_from; dropped")
            effective_until = None

        existing = await self._corroborated(slug, value, applies_when)
        if existing is not None:
            return await self._corroborate(existing, grounded)

        rule = RegulatoryRule(
            concept_slug=slug,
            title=(draft.title or f"{domain} {value_type.value}: {value}")[:200],
            applies_when=applies_when,
            value=value,
            value_type=value_type,
            authority_level=authority,
            risk_tier=risk_tier_for(value_type, draft.risk_tier),
            status=RuleStatus.DRAFT,
            confidence=min(p.confidence for p in grounded),
            effective_from=effective_from,
            effective_until=effective_until,
            source_pointer_ids=[p.id for p in grounded],
            review_notes=notes,
        )

        await self._store.upsert_concept(Concept(slug=slug, title=rule.title))
        await self._store.add_rule(rule)
        await self._store.assign_pointers(rule.source_pointer_ids, rule.id)
        if self._queue is not None:
            await self._queue.put(Stage.REVIEWER, rule.id)

        logger.info(
            "rule_composed",
            rule_id=rule.id,
            concept_slug=slug,
            value=value,
            risk_tier=rule.risk_tier.value,
            authority_level=authority.value,
            pointers=len(grounded),
            excluded=len(pointers) - len(grounded),
        )
        return rule

    async def _corroborated(
        self,
        slug: str,
        value: str,
        applies_when: dict[str, Any],
    ) -> RegulatoryRule | None:
        """A live rule stating the same value under the same condition."""
        live = await self._store.list_rules(
            statuses=[
                RuleStatus.DRAFT,
                RuleStatus.PENDING_REVIEW,
                RuleStatus.APPROVED,
                RuleStatus.PUBLISHED,
            ],
            concept_slug=slug,
        )
        for rule in live:
            if values_agree(rule.value, value) and rule.applies_when == applies_when:
                return rule
        return None

    async def _corroborate(self, rule: RegulatoryRule, pointers: list[SourcePointer]) -> RegulatoryRule:
        """
        Attach new supporting pointers to an existing rule.

        Rules not yet approved take the pointers into their provenance and
        go back to review; approved and published rules keep their content
        unchanged and only the pointers are marked as grouped.
        """
        new_ids = [p.id for p in pointers if p.id not in rule.source_pointer_ids]
        if rule.status in (RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW) and new_ids:
            rule.source_pointer_ids = [*rule.source_pointer_ids, *new_ids]
            rule.confidence = min(rule.confidence, *(p.confidence for p in pointers))
            await self._store.save_rule(rule)
            if self._queue is not None:
                await self._queue.put(Stage.REVIEWER, rule.id)

        await self._store.assign_pointers([p.id for p in pointers], rule.id)
        logger.info(
            "rule_corroborated",
            rule_id=rule.id,
            concept_slug=rule.concept_slug,
            status=rule.status.value,
            pointers=len(new_ids),
        )
        return rule
