"""
Event pipeline and periodic jobs.
"""

from vigil.pipeline.orchestrator import EventPipeline, PipelineStats, audit_event_type
from vigil.pipeline.scheduler import PeriodicTask, Scheduler, build_scheduler

__all__ = [
    "EventPipeline",
    "PeriodicTask",
    "PipelineStats",
    "Scheduler",
    "audit_event_type",
    "build_scheduler",
]
