"""
Conflict Routes
===============

Conflict listing and the human arbitration actions.

Version: 0.1.0
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from services.regulatory_truth.dependencies import get_pipeline
from services.regulatory_truth.models import ConflictStatus, RegulatoryConflict
from services.regulatory_truth.pipeline import Pipeline
from shared.logging import get_logger
from shared.models.common import BaseResponse


logger = get_logger(__name__)

router = APIRouter()


class ResolveRequest(BaseModel):
    winning_rule_id: str = Field(
        ...,
        min_length=1,
        description="Winning rule id; for source conflicts, the winning pointer id",
    )
    rationale: str = Field(..., min_length=1)
    resolved_by: str = Field(..., min_length=1)


class EscalateRequest(BaseModel):
    reason: str | None = None


@router.get("", response_model=BaseResponse[list[RegulatoryConflict]])
async def list_conflicts(
    status: ConflictStatus | None = Query(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[list[RegulatoryConflict]]:
    """List conflicts, optionally filtered by status."""
    return BaseResponse(data=await pipeline.store.list_conflicts(status=status))


@router.get("/{conflict_id}", response_model=BaseResponse[RegulatoryConflict])
async def get_conflict(
    conflict_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryConflict]:
    return BaseResponse(data=await pipeline.store.get_conflict(conflict_id))


@router.post("/{conflict_id}/resolve", response_model=BaseResponse[RegulatoryConflict])
async def resolve_conflict(
    conflict_id: str,
    request: ResolveRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryConflict]:
    conflict = await pipeline.arbiter.resolve_conflict(
        conflict_id,
        request.winning_rule_id,
        request.rationale,
        request.resolved_by,
    )
    logger.info("conflict_resolved_via_api", conflict_id=conflict_id, resolved_by=request.resolved_by)
    return BaseResponse(data=conflict, message="Conflict resolved")


@router.post("/{conflict_id}/escalate", response_model=BaseResponse[RegulatoryConflict])
async def escalate_conflict(
    conflict_id: str,
    request: EscalateRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RegulatoryConflict]:
    reason = request.reason if request else None
    conflict = await pipeline.arbiter.escalate(conflict_id, reason=reason)
    return BaseResponse(data=conflict, message="Conflict escalated")
