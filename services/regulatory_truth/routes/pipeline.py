"""
Pipeline Routes
===============

Operator actions: one synchronous pass over all stages and the
store-wide integrity audit.

Version: 0.1.0
"""

from typing import Any

from fastapi import APIRouter, Depends, Query

from services.regulatory_truth.dependencies import get_pipeline
from services.regulatory_truth.pipeline import Pipeline
from shared.logging import get_logger
from shared.models.common import BaseResponse


logger = get_logger(__name__)

router = APIRouter()


@router.post("/run", response_model=BaseResponse[dict[str, Any]])
async def run_pipeline(
    discover: bool = Query(default=True, description="Run the Sentinel first"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[dict[str, Any]]:
    handled = await pipeline.run_once(discover=discover)
    return BaseResponse(data={"handled": handled})


@router.get("/audit", response_model=BaseResponse[dict[str, Any]])
async def audit(
    pipeline: Pipeline = Depends(get_pipeline),
) -> BaseResponse[dict[str, Any]]:
    """PASS/FAIL per invariant, with the violating record ids."""
    report = await pipeline.auditor.run()
    return BaseResponse(
        data={
            "passed": report.passed,
            "invariants": {
                r.name: {
                    "status": r.status.value,
                    "checked": r.checked,
                    "violations": r.violations,
                }
                for r in report.results
            },
        },
        message="Audit passed" if report.passed else "Audit found violations",
    )
