"""
Security event ingestion and compliance check routes.
"""

from typing import Any

from fastapi import APIRouter, Body, Request, status
from fastapi.responses import JSONResponse

from vigil.api.deps import Pipeline
from vigil.utils import utcnow

router = APIRouter()


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(request: Request, pipeline: Pipeline):
    """
    Submit a security event.

    Returns 202 when the event was accepted into the pipeline. Analysis
    results are not returned to the caller.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    accepted = await pipeline.process_event(payload)
    timestamp = utcnow().isoformat()
    if not accepted:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"accepted": False, "timestamp": timestamp},
        )
    return {"accepted": True, "timestamp": timestamp}


@router.post("/compliance/check")
async def check_compliance(pipeline: Pipeline, content: Any = Body(...)) -> dict[str, Any]:
    """Run the compliance scorer over arbitrary content."""
    result = await pipeline.check_compliance(content)
    return result.to_dict()


@router.get("/stats")
async def get_stats(pipeline: Pipeline) -> dict[str, Any]:
    return {**pipeline.stats(), "timestamp": utcnow().isoformat()}
