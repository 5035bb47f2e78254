"""
Rule Evaluation
===============

Read-side interface for consumers: given a business context, return
every PUBLISHED rule whose AppliesWhen predicate holds, with citations
back to the quoted evidence.

Version: 0.1.0
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from services.regulatory_truth.dsl import Predicate, evaluate, parse_predicate
from services.regulatory_truth.errors import InvalidPredicate, NotFound
from services.regulatory_truth.models import RegulatoryRule, RuleStatus
from services.regulatory_truth.store.base import PipelineStore
from shared.logging import get_logger


logger = get_logger(__name__)


class Citation(BaseModel):
    """A quote backing a rule, for display next to the rule."""

    pointer_id: str
    quote: str
    url: str
    fetched_at: datetime
    article_ref: str | None = None


class EvaluatedRule(BaseModel):
    """A rule that applies to the evaluated context."""

    rule: RegulatoryRule
    citations: list[Citation] = Field(default_factory=list)


class RuleEvaluator:
    """
    Evaluates contexts against the published rule set.

    Published rules never change, so parsed predicates are cached by
    rule id.
    """

    def __init__(self, store: PipelineStore) -> None:
        self._store = store
        self._predicates: dict[str, Predicate] = {}

    def _predicate(self, rule: RegulatoryRule) -> Predicate | None:
        cached = self._predicates.get(rule.id)
        if cached is not None:
            return cached
        try:
            predicate = parse_predicate(rule.applies_when)
        except InvalidPredicate as e:
            # Predicates are validated at review; an unparsable one is never matched
            logger.error("published_rule_invalid_predicate", rule_id=rule.id, error=e.message)
            return None
        self._predicates[rule.id] = predicate
        return predicate

    async def citations_for(self, rule: RegulatoryRule) -> list[Citation]:
        citations: list[Citation] = []
        for pointer in await self._store.get_pointers(rule.source_pointer_ids):
            try:
                evidence = await self._store.get_evidence(pointer.evidence_id)
            except NotFound:
                logger.error(
                    "citation_evidence_missing",
                    rule_id=rule.id,
                    pointer_id=pointer.id,
                    evidence_id=pointer.evidence_id,
                )
                continue
            citations.append(
                Citation(
                    pointer_id=pointer.id,
                    quote=pointer.exact_quote,
                    url=evidence.url,
                    fetched_at=evidence.fetched_at,
                    article_ref=pointer.article_ref,
                )
            )
        return citations

    async def evaluate(
        self,
        context: dict[str, Any],
        concept_slug: str | None = None,
    ) -> list[EvaluatedRule]:
        """
        Return published rules applicable to ``context``.

        Args:
            context: business context (nested mapping, dotted paths in predicates)
            concept_slug: restrict to one concept

        Returns:
            Matching rules ordered by concept slug then rule id
        """
        rules = await self._store.list_rules(
            statuses=[RuleStatus.PUBLISHED],
            concept_slug=concept_slug,
        )

        matched: list[EvaluatedRule] = []
        for rule in sorted(rules, key=lambda r: (r.concept_slug, r.id)):
            predicate = self._predicate(rule)
            if predicate is None:
                continue
            if not evaluate(predicate, context, window=(rule.effective_from, rule.effective_until)):
                continue
            matched.append(EvaluatedRule(rule=rule, citations=await self.citations_for(rule)))

        logger.debug(
            "rules_evaluated",
            candidates=len(rules),
            matched=len(matched),
            concept_slug=concept_slug,
        )
        return matched
