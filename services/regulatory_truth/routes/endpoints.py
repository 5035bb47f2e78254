"""
Endpoint Routes
===============

Discovery endpoint health: error counters, active flags, schedule.

Version: 0.1.0
"""

from fastapi import APIRouter, Depends, Query

from services.regulatory_truth.dependencies import get_pipeline
from services.regulatory_truth.models import DiscoveryEndpoint
from services.regulatory_truth.pipeline import Pipeline
from shared.models.common import BaseResponse


router = APIRouter()


@router.get("", response_model=BaseResponse[list[DiscoveryEndpoint]])
async def list_endpoints(
    active_only: bool = Query(default=False),
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[list[DiscoveryEndpoint]]:
    return BaseResponse(data=await pipeline.registry.list_endpoints(active_only=active_only))
