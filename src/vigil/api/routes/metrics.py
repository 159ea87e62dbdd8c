"""
Read-only health and metrics routes.
"""

from typing import Any

from fastapi import APIRouter

from vigil.api.deps import Monitor

router = APIRouter()


@router.get("/current")
async def current_metrics(monitor: Monitor) -> dict[str, Any]:
    """Latest metrics snapshot."""
    return monitor.current_metrics()


@router.get("/health")
async def health_status(monitor: Monitor) -> dict[str, Any]:
    """
    Most recent health evaluation.

    Evaluates now when no stored status is available.
    """
    stored = await monitor.last_health_status()
    if stored is not None:
        return stored
    status = await monitor.evaluate_health()
    return status.to_dict()
