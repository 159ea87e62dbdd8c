"""
System metric sampling and pipeline counter keys.
"""

import logging
import time
from typing import Optional

import psutil

from vigil.models.metrics import SystemMetrics

logger = logging.getLogger(__name__)

# Pipeline counters written by HealthMonitor.record_event
REQUESTS_TOTAL = "metrics:requests:total"
ERRORS_TOTAL = "metrics:errors:total"
THREATS_TOTAL = "metrics:threats:total"
VIOLATIONS_TOTAL = "metrics:violations:total"
AUTH_FAILURES = "metrics:auth:failures"
LATENCY_TOTAL_MS = "metrics:latency:total_ms"
LATENCY_COUNT = "metrics:latency:count"
HEALTH_ALERTS = "metrics:alerts:health"
HEALTH_STATUS_KEY = "monitoring:health_status"


class SystemSampler:
    """
    Reads host metrics through psutil.

    Calls block briefly; run sample() in a worker thread from async code.
    """

    def __init__(self, disk_path: str = "/", started_at: Optional[float] = None):
        self.disk_path = disk_path
        self._started_at = started_at if started_at is not None else time.monotonic()
        # Prime the CPU counter so the first non-blocking read is meaningful
        psutil.cpu_percent(interval=None)

    def cpu_count(self) -> int:
        return psutil.cpu_count() or 1

    def sample(self) -> SystemMetrics:
        metrics = SystemMetrics(uptime=round(time.monotonic() - self._started_at, 1))
        try:
            metrics.cpu_usage = psutil.cpu_percent(interval=None)
            metrics.memory_usage = psutil.virtual_memory().percent
            metrics.load_average = list(psutil.getloadavg())
        except (psutil.Error, OSError) as e:
            logger.warning(f"System metrics collection error: {e}")
        try:
            metrics.disk_usage = psutil.disk_usage(self.disk_path).percent
        except OSError as e:
            logger.warning(f"Disk usage collection error for {self.disk_path}: {e}")
        return metrics
