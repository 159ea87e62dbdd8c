"""
FastAPI dependencies for the API.

Components are created once in the application lifespan and stored on
app.state; routes receive them through these dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from vigil.audit.trail import AuditTrail
from vigil.monitoring.health import HealthMonitor
from vigil.pipeline.orchestrator import EventPipeline


def get_pipeline(request: Request) -> EventPipeline:
    return request.app.state.pipeline


def get_audit_trail(request: Request) -> AuditTrail:
    return request.app.state.pipeline.audit_trail


def get_monitor(request: Request) -> HealthMonitor:
    return request.app.state.pipeline.monitor


# Type aliases for dependency injection
Pipeline = Annotated[EventPipeline, Depends(get_pipeline)]
Audit = Annotated[AuditTrail, Depends(get_audit_trail)]
Monitor = Annotated[HealthMonitor, Depends(get_monitor)]
