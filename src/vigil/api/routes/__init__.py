"""
API route modules.
"""

from vigil.api.routes.audit import router as audit_router
from vigil.api.routes.events import router as events_router
from vigil.api.routes.metrics import router as metrics_router

__all__ = [
    "audit_router",
    "events_router",
    "metrics_router",
]
