"""
FastAPI Dependencies
====================

Dependency injection for the pipeline held by the running app.

Version: 0.1.0
"""

from fastapi import HTTPException, Request, status

from services.regulatory_truth.pipeline import Pipeline


async def get_pipeline(request: Request) -> Pipeline:
    """
    Dependency that provides the app's pipeline.

    Usage:
        @router.get("/pending")
        async def pending(pipeline: Pipeline = Depends(get_pipeline)):
            return await pipeline.reviewer.pending_human_review()

    Raises:
        HTTPException: 503 before the lifespan has built the pipeline
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return pipeline
