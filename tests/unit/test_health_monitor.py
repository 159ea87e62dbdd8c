"""
Unit tests for health evaluation and anomaly detection.
"""

from unittest.mock import AsyncMock

import pytest

from vigil.models.metrics import HealthState
from vigil.models.severity import Severity
from vigil.monitoring.health import HealthMonitor, tiered_check
from vigil.monitoring.metrics import HEALTH_ALERTS, REQUESTS_TOTAL

from helpers import StubSampler


def _monitor(cache, clock, sampler=None, dispatcher=None, **kwargs) -> HealthMonitor:
    return HealthMonitor(
        cache,
        sampler=sampler or StubSampler(),
        dispatcher=dispatcher,
        clock=clock,
        **kwargs,
    )


class TestTieredCheck:
    """Tests for the two-tier threshold check."""

    def test_healthy_below_warning(self):
        assert tiered_check("cpu", 64.0, 80.0).status == HealthState.HEALTHY

    def test_warning_above_eighty_percent(self):
        check = tiered_check("cpu", 65.0, 80.0, "%")

        assert check.status == HealthState.WARNING
        assert check.threshold == pytest.approx(64.0)

    def test_critical_above_threshold(self):
        assert tiered_check("cpu", 80.1, 80.0).status == HealthState.CRITICAL

    def test_threshold_itself_is_warning(self):
        assert tiered_check("cpu", 80.0, 80.0).status == HealthState.WARNING


class TestSampling:
    """Tests for snapshots and counters."""

    @pytest.mark.asyncio
    async def test_windowed_performance(self, cache, clock):
        monitor = _monitor(cache, clock)
        for _ in range(8):
            await monitor.record_event("request", source_ip="198.51.100.1", latency_ms=10.0)
        for _ in range(2):
            await monitor.record_event(error=True)
        clock.advance(10)

        first = await monitor.sample()

        assert first.security.requests_processed == 10
        assert first.performance.requests_per_second == pytest.approx(1.0)
        assert first.performance.error_rate == pytest.approx(20.0)
        assert first.performance.avg_response_time == pytest.approx(10.0)

        clock.advance(10)
        second = await monitor.sample()

        assert second.security.requests_processed == 10
        assert second.performance.requests_per_second == 0.0
        assert second.performance.error_rate == 0.0

    @pytest.mark.asyncio
    async def test_security_counters(self, cache, clock):
        monitor = _monitor(cache, clock)
        await cache.sadd("security:blocked_ips", "192.0.2.1", "192.0.2.2")
        await monitor.record_event("authentication_failure", is_threat=True, auth_failure=True)
        await monitor.record_event("request", violation=True)

        snapshot = await monitor.sample()

        assert snapshot.security.threats_detected == 1
        assert snapshot.security.failed_authentications == 1
        assert snapshot.security.policy_violations == 1
        assert snapshot.security.blocked_ips == 2
        assert await cache.get("metrics:events:authentication_failure") == "1"

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, cache, clock):
        monitor = _monitor(cache, clock, history_size=3)

        for _ in range(5):
            clock.advance(1)
            await monitor.sample()

        assert len(await cache.lrange("metrics:performance:history", 0, -1)) == 3
        assert await cache.get("metrics:system:current") is not None

    @pytest.mark.asyncio
    async def test_counter_failure_is_logged_not_raised(self, clock):
        cache = AsyncMock()
        cache.incr.side_effect = ConnectionError("redis down")
        monitor = _monitor(cache, clock)

        await monitor.record_event("request", error=True)

    @pytest.mark.asyncio
    async def test_current_metrics_reports_uptime(self, cache, clock):
        monitor = _monitor(cache, clock)
        clock.advance(42)

        data = monitor.current_metrics()

        assert data["uptime_seconds"] == 42
        assert set(data) >= {"system", "security", "performance", "timestamp"}


class TestHealthEvaluation:
    """Tests for health status and health alerts."""

    @pytest.mark.asyncio
    async def test_healthy_system(self, cache, clock):
        dispatcher = AsyncMock()
        monitor = _monitor(cache, clock, dispatcher=dispatcher)

        status = await monitor.evaluate_health()

        assert status.overall_status == HealthState.HEALTHY
        assert status.failing == []
        dispatcher.notify_system.assert_not_called()
        stored = await monitor.last_health_status()
        assert stored["overall_status"] == "healthy"

    @pytest.mark.asyncio
    async def test_critical_cpu_alerts(self, cache, clock):
        dispatcher = AsyncMock()
        monitor = _monitor(cache, clock, sampler=StubSampler(cpu=95.0), dispatcher=dispatcher)

        status = await monitor.evaluate_health()

        assert status.overall_status == HealthState.CRITICAL
        assert [c.name for c in status.failing] == ["cpu"]
        dispatcher.notify_system.assert_awaited_once()
        args, kwargs = dispatcher.notify_system.call_args
        assert args[0] == "error"
        assert kwargs["identifier"] == "health:cpu"
        assert await cache.get(HEALTH_ALERTS) == "1"

    @pytest.mark.asyncio
    async def test_warning_memory(self, cache, clock):
        dispatcher = AsyncMock()
        monitor = _monitor(cache, clock, sampler=StubSampler(memory=70.0), dispatcher=dispatcher)

        status = await monitor.evaluate_health()

        assert status.overall_status == HealthState.WARNING
        assert dispatcher.notify_system.call_args[0][0] == "warning"

    @pytest.mark.asyncio
    async def test_load_threshold_follows_cpu_count(self, cache, clock):
        sampler = StubSampler(cpus=1)
        sampler.metrics.load_average = [1.5, 1.0, 1.0]
        monitor = _monitor(cache, clock, sampler=sampler)

        status = await monitor.evaluate_health()

        assert status.checks["load"].status == HealthState.CRITICAL

    @pytest.mark.asyncio
    async def test_unreachable_store_is_critical(self, cache, clock):
        store = AsyncMock()
        store.ping.return_value = False
        monitor = _monitor(cache, clock, store=store)

        status = await monitor.evaluate_health()

        assert status.checks["database"].status == HealthState.CRITICAL

    @pytest.mark.asyncio
    async def test_error_rate_alert_reaches_channels(self, cache, clock, dispatcher, channels):
        monitor = _monitor(cache, clock, dispatcher=dispatcher)
        for _ in range(10):
            await monitor.record_event(error=True)
        clock.advance(5)

        await monitor.evaluate_health(await monitor.sample())

        assert [a.identifier for a in channels["log"].sent] == ["health:error_rate"]
        assert channels["log"].sent[0].level == Severity.HIGH
        assert channels["webhook"].sent == []


class TestAnomalyDetection:
    """Tests for spikes against the rolling baseline."""

    @pytest.mark.asyncio
    async def test_no_snapshot_no_anomalies(self, cache, clock):
        assert await _monitor(cache, clock).detect_anomalies() == []

    @pytest.mark.asyncio
    async def test_traffic_spike(self, cache, clock):
        dispatcher = AsyncMock()
        monitor = _monitor(cache, clock, dispatcher=dispatcher)
        for _ in range(10):
            await monitor.record_event("request")
        clock.advance(10)
        await monitor.sample()
        assert await monitor.detect_anomalies() == []

        for _ in range(100):
            await monitor.record_event("request")
        clock.advance(10)
        await monitor.sample()
        anomalies = await monitor.detect_anomalies()

        assert [a.type for a in anomalies] == ["traffic_spike"]
        assert anomalies[0].baseline == pytest.approx(1.0)
        assert anomalies[0].current_value == pytest.approx(10.0)
        _, kwargs = dispatcher.notify_system.call_args
        assert kwargs["identifier"] == "anomaly:traffic_spike"
        assert kwargs["level"] == Severity.HIGH

    @pytest.mark.asyncio
    async def test_error_spike(self, cache, clock):
        monitor = _monitor(cache, clock)
        for _ in range(10):
            await monitor.record_event("request")
        clock.advance(10)
        await monitor.sample()

        for _ in range(5):
            await monitor.record_event("request")
        for _ in range(5):
            await monitor.record_event(error=True)
        clock.advance(10)
        await monitor.sample()
        anomalies = await monitor.detect_anomalies()

        assert [a.type for a in anomalies] == ["error_spike"]
        assert anomalies[0].current_value == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_first_sample_has_no_baseline(self, cache, clock):
        monitor = _monitor(cache, clock)
        await cache.incr(REQUESTS_TOTAL, 100)
        clock.advance(1)
        await monitor.sample()

        assert await monitor.detect_anomalies() == []
