"""
Health and metrics monitor.

Samples host metrics and pipeline counters, evaluates them against
two-tier thresholds (warning at 80% of critical), and flags throughput
and error-rate anomalies against the rolling history of snapshots.
Failing checks and anomalies are routed to the alert dispatcher as
system alerts.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional
from uuid import uuid4

from vigil.alerts.dispatcher import AlertDispatcher
from vigil.detection.threat import BLOCKED_IPS_KEY
from vigil.models.metrics import (
    Anomaly,
    HealthCheck,
    HealthState,
    HealthStatus,
    MetricsSnapshot,
    PerformanceMetrics,
    SecurityMetrics,
)
from vigil.models.severity import Severity
from vigil.monitoring.metrics import (
    AUTH_FAILURES,
    ERRORS_TOTAL,
    HEALTH_ALERTS,
    HEALTH_STATUS_KEY,
    LATENCY_COUNT,
    LATENCY_TOTAL_MS,
    REQUESTS_TOTAL,
    THREATS_TOTAL,
    VIOLATIONS_TOTAL,
    SystemSampler,
)
from vigil.store.cache import CacheStore
from vigil.store.documents import DocumentStore
from vigil.utils import utcnow

logger = logging.getLogger(__name__)

WARNING_RATIO = 0.8
HEALTH_STATUS_TTL = 300
ANOMALY_TTL = 86400
TRAFFIC_SPIKE_FACTOR = 3.0
ERROR_SPIKE_FACTOR = 2.0
ERROR_SPIKE_FLOOR = 1.0


def tiered_check(name: str, value: float, critical: float, unit: str = "") -> HealthCheck:
    """Critical above the threshold, warning above 80% of it."""
    if value > critical:
        return HealthCheck(
            name, HealthState.CRITICAL, value, critical, f"{name} critically high: {value:.2f}{unit}"
        )
    warning = critical * WARNING_RATIO
    if value > warning:
        return HealthCheck(name, HealthState.WARNING, value, warning, f"{name} high: {value:.2f}{unit}")
    return HealthCheck(name, HealthState.HEALTHY, value, None, f"{name} normal: {value:.2f}{unit}")


class HealthMonitor:
    """
    Periodic health evaluation and anomaly detection.

    Usage:
        monitor = HealthMonitor(cache, dispatcher=dispatcher)
        await monitor.record_event("api_request", source_ip=ip, latency_ms=12.5)
        await monitor.sample()
        status = await monitor.evaluate_health()
        anomalies = await monitor.detect_anomalies()
    """

    def __init__(
        self,
        cache: CacheStore,
        sampler: Optional[SystemSampler] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        store: Optional[DocumentStore] = None,
        cpu_threshold: float = 80.0,
        memory_threshold: float = 85.0,
        disk_threshold: float = 90.0,
        response_time_threshold_ms: float = 5000.0,
        error_rate_threshold: float = 5.0,
        history_size: int = 60,
        retention_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self._sampler = sampler or SystemSampler()
        self._dispatcher = dispatcher
        self._store = store
        self.cpu_threshold = cpu_threshold
        self.memory_threshold = memory_threshold
        self.disk_threshold = disk_threshold
        self.response_time_threshold_ms = response_time_threshold_ms
        self.error_rate_threshold = error_rate_threshold
        self.history_size = history_size
        self.retention_seconds = retention_seconds
        self._clock = clock

        self._current: Optional[MetricsSnapshot] = None
        self._previous_counters: Optional[dict[str, float]] = None
        self._started_at = clock()

        self._stats: dict[str, Any] = {
            "samples": 0,
            "health_checks": 0,
            "anomalies_detected": 0,
            "alerts_triggered": 0,
            "last_health_check": None,
        }

    @property
    def current(self) -> Optional[MetricsSnapshot]:
        return self._current

    def attach_dispatcher(self, dispatcher: AlertDispatcher) -> None:
        self._dispatcher = dispatcher

    async def record_event(
        self,
        event_type: Optional[str] = None,
        source_ip: Optional[str] = None,
        latency_ms: Optional[float] = None,
        is_threat: bool = False,
        violation: bool = False,
        error: bool = False,
        auth_failure: bool = False,
    ) -> None:
        """Update the pipeline counters for one processed request."""
        try:
            await self._cache.incr(REQUESTS_TOTAL)
            if event_type:
                await self._cache.incr(f"metrics:events:{event_type}")
            if source_ip:
                await self._incr_expiring(f"metrics:ips:{source_ip}", self.retention_seconds)
            await self._incr_expiring(f"metrics:hourly:{utcnow().hour}", 86400)
            if is_threat:
                await self._cache.incr(THREATS_TOTAL)
            if violation:
                await self._cache.incr(VIOLATIONS_TOTAL)
            if error:
                await self._cache.incr(ERRORS_TOTAL)
            if auth_failure:
                await self._cache.incr(AUTH_FAILURES)
            if latency_ms is not None:
                await self._cache.incrbyfloat(LATENCY_TOTAL_MS, latency_ms)
                await self._cache.incr(LATENCY_COUNT)
        except Exception as e:
            logger.warning(f"Security metrics update error: {e}")

    async def _incr_expiring(self, key: str, ttl: int) -> None:
        if await self._cache.incr(key) == 1:
            await self._cache.expire(key, ttl)

    async def _read_number(self, key: str) -> float:
        value = await self._cache.get(key)
        return float(value) if value else 0.0

    async def _collect_counters(self) -> dict[str, float]:
        counters = {}
        for key in (
            REQUESTS_TOTAL,
            ERRORS_TOTAL,
            THREATS_TOTAL,
            VIOLATIONS_TOTAL,
            AUTH_FAILURES,
            LATENCY_TOTAL_MS,
            LATENCY_COUNT,
        ):
            counters[key] = await self._read_number(key)
        counters["blocked_ips"] = float(await self._cache.scard(BLOCKED_IPS_KEY))
        counters["at"] = self._clock()
        return counters

    def _derive_performance(self, counters: dict[str, float]) -> PerformanceMetrics:
        """Rates over the interval since the previous sample."""
        previous = self._previous_counters
        if previous is None:
            requests = counters[REQUESTS_TOTAL]
            errors = counters[ERRORS_TOTAL]
            latency = counters[LATENCY_TOTAL_MS]
            latency_count = counters[LATENCY_COUNT]
            elapsed = counters["at"] - self._started_at
        else:
            requests = counters[REQUESTS_TOTAL] - previous[REQUESTS_TOTAL]
            errors = counters[ERRORS_TOTAL] - previous[ERRORS_TOTAL]
            latency = counters[LATENCY_TOTAL_MS] - previous[LATENCY_TOTAL_MS]
            latency_count = counters[LATENCY_COUNT] - previous[LATENCY_COUNT]
            elapsed = counters["at"] - previous["at"]

        return PerformanceMetrics(
            avg_response_time=round(latency / latency_count, 2) if latency_count > 0 else 0.0,
            requests_per_second=round(requests / elapsed, 3) if elapsed > 0 else 0.0,
            error_rate=round(errors / requests * 100, 2) if requests > 0 else 0.0,
        )

    async def _store_snapshot(self, snapshot: MetricsSnapshot) -> None:
        data = snapshot.to_dict()
        for category in ("system", "security", "performance"):
            record = json.dumps({**data[category], "timestamp": data["timestamp"]})
            history_key = f"metrics:{category}:history"
            await self._cache.set(f"metrics:{category}:current", record, ttl=self.retention_seconds)
            await self._cache.lpush(history_key, record)
            await self._cache.ltrim(history_key, 0, self.history_size - 1)
            await self._cache.expire(history_key, self.retention_seconds)

    async def sample(self) -> MetricsSnapshot:
        """Collect and store one metrics snapshot."""
        system = await asyncio.to_thread(self._sampler.sample)
        snapshot = MetricsSnapshot(system=system)

        try:
            counters = await self._collect_counters()
            snapshot.security = SecurityMetrics(
                threats_detected=int(counters[THREATS_TOTAL]),
                requests_processed=int(counters[REQUESTS_TOTAL]),
                failed_authentications=int(counters[AUTH_FAILURES]),
                blocked_ips=int(counters["blocked_ips"]),
                policy_violations=int(counters[VIOLATIONS_TOTAL]),
            )
            snapshot.performance = self._derive_performance(counters)
            self._previous_counters = counters
        except Exception as e:
            logger.warning(f"Pipeline metrics collection error: {e}")

        if self._store is not None:
            snapshot.performance.database_connections = 1 if await self._store.ping() else 0

        try:
            await self._store_snapshot(snapshot)
        except Exception as e:
            logger.warning(f"Metrics storage error: {e}")

        self._current = snapshot
        self._stats["samples"] += 1
        return snapshot

    def _checks(self, snapshot: MetricsSnapshot) -> dict[str, HealthCheck]:
        system = snapshot.system
        performance = snapshot.performance
        checks = {
            "cpu": tiered_check("cpu", system.cpu_usage, self.cpu_threshold, "%"),
            "memory": tiered_check("memory", system.memory_usage, self.memory_threshold, "%"),
            "disk": tiered_check("disk", system.disk_usage, self.disk_threshold, "%"),
            "load": tiered_check(
                "load",
                system.load_average[0] if system.load_average else 0.0,
                float(self._sampler.cpu_count()),
            ),
            "error_rate": tiered_check(
                "error_rate", performance.error_rate, self.error_rate_threshold, "%"
            ),
            "response_time": tiered_check(
                "response_time",
                performance.avg_response_time,
                self.response_time_threshold_ms,
                "ms",
            ),
        }
        if self._store is not None and performance.database_connections == 0:
            checks["database"] = HealthCheck(
                "database", HealthState.CRITICAL, 0, 1, "document store unreachable"
            )
        return checks

    async def evaluate_health(self, snapshot: Optional[MetricsSnapshot] = None) -> HealthStatus:
        """
        Evaluate the latest snapshot and alert on each failing check.

        Samples first when no snapshot has been taken yet.
        """
        snapshot = snapshot or self._current or await self.sample()
        checks = self._checks(snapshot)

        states = {check.status for check in checks.values()}
        if HealthState.CRITICAL in states:
            overall = HealthState.CRITICAL
        elif HealthState.WARNING in states:
            overall = HealthState.WARNING
        else:
            overall = HealthState.HEALTHY
        status = HealthStatus(overall_status=overall, checks=checks)

        self._stats["health_checks"] += 1
        self._stats["last_health_check"] = status.timestamp

        try:
            await self._cache.set(
                HEALTH_STATUS_KEY, json.dumps(status.to_dict()), ttl=HEALTH_STATUS_TTL
            )
        except Exception as e:
            logger.warning(f"Health status storage error: {e}")

        for check in status.failing:
            await self._alert_check(check)

        return status

    async def _alert_check(self, check: HealthCheck) -> None:
        logger.warning(f"Health alert triggered: {check.message}")
        self._stats["alerts_triggered"] += 1
        try:
            await self._cache.incr(HEALTH_ALERTS)
        except Exception as e:
            logger.warning(f"Health alert counter update failed: {e}")
        if self._dispatcher is not None:
            await self._dispatcher.notify_system(
                "error" if check.status == HealthState.CRITICAL else "warning",
                check.message,
                identifier=f"health:{check.name}",
                details=check.to_dict(),
            )

    async def _historical_average(self, category: str, metric: str, exclude: str) -> float:
        """Mean of positive values in the stored history, skipping one timestamp."""
        history = await self._cache.lrange(f"metrics:{category}:history", 0, -1)
        values = []
        for item in history:
            data = json.loads(item)
            if data.get("timestamp") == exclude:
                continue
            value = data.get(metric) or 0
            if value > 0:
                values.append(value)
        return sum(values) / len(values) if values else 0.0

    async def detect_anomalies(self) -> list[Anomaly]:
        """
        Compare the latest snapshot with the mean of the earlier history.

        Traffic spike: requests/s above 3x a positive baseline.
        Error spike: error rate above 2x baseline and above 1%.
        """
        snapshot = self._current
        if snapshot is None:
            return []
        current_ts = snapshot.to_dict()["timestamp"]
        performance = snapshot.performance
        anomalies = []

        try:
            rps_baseline = await self._historical_average(
                "performance", "requests_per_second", current_ts
            )
            error_baseline = await self._historical_average("performance", "error_rate", current_ts)
        except Exception as e:
            logger.warning(f"Historical average calculation error: {e}")
            return []

        if rps_baseline > 0 and performance.requests_per_second > rps_baseline * TRAFFIC_SPIKE_FACTOR:
            anomalies.append(
                Anomaly(
                    type="traffic_spike",
                    message=(
                        f"Abnormal traffic increase: {performance.requests_per_second:.2f} RPS "
                        f"(baseline {rps_baseline:.2f} RPS)"
                    ),
                    current_value=performance.requests_per_second,
                    baseline=rps_baseline,
                )
            )

        if (
            performance.error_rate > error_baseline * ERROR_SPIKE_FACTOR
            and performance.error_rate > ERROR_SPIKE_FLOOR
        ):
            anomalies.append(
                Anomaly(
                    type="error_spike",
                    message=(
                        f"Error rate spike: {performance.error_rate:.2f}% "
                        f"(baseline {error_baseline:.2f}%)"
                    ),
                    current_value=performance.error_rate,
                    baseline=error_baseline,
                )
            )

        if anomalies:
            self._stats["anomalies_detected"] += len(anomalies)
            logger.warning(f"Anomalies detected: {[a.type for a in anomalies]}")
            await self._record_anomalies(anomalies, snapshot)
            if self._dispatcher is not None:
                for anomaly in anomalies:
                    await self._dispatcher.notify_system(
                        "anomaly",
                        anomaly.message,
                        identifier=f"anomaly:{anomaly.type}",
                        details=anomaly.to_dict(),
                        level=anomaly.severity,
                    )

        return anomalies

    async def _record_anomalies(self, anomalies: list[Anomaly], snapshot: MetricsSnapshot) -> None:
        try:
            for anomaly in anomalies:
                key = f"anomaly:{int(time.time() * 1000)}:{uuid4()}"
                record = {**anomaly.to_dict(), "system_state": snapshot.to_dict()}
                await self._cache.set(key, json.dumps(record), ttl=ANOMALY_TTL)
        except Exception as e:
            logger.warning(f"Anomaly recording error: {e}")

    async def last_health_status(self) -> Optional[dict[str, Any]]:
        raw = await self._cache.get(HEALTH_STATUS_KEY)
        return json.loads(raw) if raw else None

    def current_metrics(self) -> dict[str, Any]:
        data = (self._current or MetricsSnapshot()).to_dict()
        data["uptime_seconds"] = int(self._clock() - self._started_at)
        return data

    def stats(self) -> dict[str, Any]:
        last = self._stats["last_health_check"]
        return {
            **self._stats,
            "last_health_check": last.isoformat() if last else None,
            "thresholds": {
                "cpu": self.cpu_threshold,
                "memory": self.memory_threshold,
                "disk": self.disk_threshold,
                "response_time_ms": self.response_time_threshold_ms,
                "error_rate": self.error_rate_threshold,
            },
        }
