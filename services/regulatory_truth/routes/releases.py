"""
Release Routes
==============

Release history and hash verification.

Version: 0.1.0
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.regulatory_truth.dependencies import get_pipeline
from services.regulatory_truth.models import RuleRelease
from services.regulatory_truth.pipeline import Pipeline
from shared.models.common import BaseResponse


router = APIRouter()


class VerificationResult(BaseModel):
    release_id: str
    version: str
    valid: bool
    expected_hash: str
    actual_hash: str


@router.get("", response_model=BaseResponse[list[RuleRelease]])
async def list_releases(
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[list[RuleRelease]]:
    return BaseResponse(data=await pipeline.store.list_releases())


@router.get("/{release_id}", response_model=BaseResponse[RuleRelease])
async def get_release(
    release_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[RuleRelease]:
    return BaseResponse(data=await pipeline.store.get_release(release_id))


@router.get("/{release_id}/verify", response_model=BaseResponse[VerificationResult])
async def verify_release(
    release_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[VerificationResult]:
    """Recompute the canonical hash of a release and compare it to the stored one."""
    valid = await pipeline.releaser.verify(release_id)
    release, actual = await pipeline.releaser.recompute_hash(release_id)
    return BaseResponse(
        data=VerificationResult(
            release_id=release.id,
            version=release.version,
            valid=valid,
            expected_hash=release.content_hash,
            actual_hash=actual,
        ),
    )
