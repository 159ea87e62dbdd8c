"""
Health and metrics monitoring.
"""

from vigil.monitoring.health import HealthMonitor, tiered_check
from vigil.monitoring.metrics import SystemSampler

__all__ = ["HealthMonitor", "SystemSampler", "tiered_check"]
