"""
Rule Routes
===========

Rule evaluation for consumers and the human review actions.

Version: 0.1.0
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.regulatory_truth.dependencies import get_pipeline
from services.regulatory_truth.evaluation import EvaluatedRule
from services.regulatory_truth.models import RegulatoryRule
from services.regulatory_truth.pipeline import Pipeline
from shared.logging import get_logger
from shared.models.common import BaseResponse


logger = get_logger(__name__)

router = APIRouter()


class EvaluateRequest(BaseModel):
    """Business context to evaluate against the published rule set."""

    context: dict[str, Any] = Field(default_factory=dict)
    concept_slug: str | None = Field(default=None, description="Restrict to one concept")


class ApproveRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


@router.post("/evaluate", response_model=BaseResponse[list[EvaluatedRule]])
async def evaluate_rules(
    request: EvaluateRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[list[EvaluatedRule]]:
    """
    Return the published rules that apply to a context.

    Each rule carries citations back to its quoted evidence.
    """
    matched = await pipeline.evaluator.evaluate(request.context, concept_slug=request.concept_slug)
    return BaseResponse(data=matched, message=f"{len(matched)} rules apply")


@router.get("/pending", response_model=BaseResponse[list[RegulatoryRule]])
async def pending_rules(
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[list[RegulatoryRule]]:
    """Rules awaiting a human decision."""
    return BaseResponse(data=await pipeline.reviewer.pending_human_review())


@router.get("/{rule_id}", response_model=BaseResponse[RegulatoryRule])
async def get_rule(
    rule_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryRule]:
    return BaseResponse(data=await pipeline.store.get_rule(rule_id))


@router.post("/{rule_id}/approve", response_model=BaseResponse[RegulatoryRule])
async def approve_rule(
    rule_id: str,
    request: ApproveRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryRule]:
    rule = await pipeline.reviewer.approve(rule_id, request.reviewer_id)
    logger.info("rule_approved_via_api", rule_id=rule_id, reviewer_id=request.reviewer_id)
    return BaseResponse(data=rule, message="Rule approved")


@router.post("/{rule_id}/reject", response_model=BaseResponse[RegulatoryRule])
async def reject_rule(
    rule_id: str,
    request: RejectRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryRule]:
    rule = await pipeline.reviewer.reject(rule_id, request.reviewer_id, request.reason)
    logger.info("rule_rejected_via_api", rule_id=rule_id, reviewer_id=request.reviewer_id)
    return BaseResponse(data=rule, message="Rule rejected")
