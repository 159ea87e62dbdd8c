"""
Unit tests for the event pipeline orchestrator.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from vigil.errors import AuditStoreError
from vigil.models.alert import AlertType
from vigil.models.audit import AuditSearchCriteria, CleanupCounts
from vigil.models.severity import Severity
from vigil.monitoring.metrics import ERRORS_TOTAL, REQUESTS_TOTAL, THREATS_TOTAL
from vigil.utils import utcnow


async def _stored_entries(pipeline):
    await pipeline.audit_trail.flush()
    return await pipeline.audit_trail.search(AuditSearchCriteria())


class TestProcessEvent:
    """Tests for the per-event flow."""

    @pytest.mark.asyncio
    async def test_clean_event_is_audited_without_alerts(self, pipeline, make_event, channels):
        assert await pipeline.process_event(make_event()) is True

        entries = await _stored_entries(pipeline)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.event_type == "security_event"
        assert entry.severity == Severity.LOW
        assert entry.event_data["event"]["type"] == "request"
        assert entry.event_data["threat_analysis"]["is_threat"] is False
        assert entry.compliance["compliant"] is True
        assert entry.source_ip == "198.51.100.10"
        assert all(channel.sent == [] for channel in channels.values())

        stats = pipeline.stats()
        assert stats["processed"] == 1
        assert stats["accepted"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "not an object",
            {"type": "request", "source": {}, "data": {"a": 1}},
            {"timestamp": "yesterday", "type": "request", "source": {}, "data": {"a": 1}},
            {"timestamp": "2026-03-02T12:00:00Z", "type": "request", "source": {}, "data": {}},
            {
                "timestamp": "2026-03-02T12:00:00Z",
                "type": "request",
                "source": {"ip": "999.1.1.1"},
                "data": {"a": 1},
            },
        ],
    )
    async def test_invalid_event_rejected(self, pipeline, cache, payload):
        assert await pipeline.process_event(payload) is False

        assert pipeline.audit_trail.buffer_size == 0
        assert pipeline.stats()["rejected"] == 1
        assert await cache.get(ERRORS_TOTAL) == "1"

    @pytest.mark.asyncio
    async def test_sql_injection_alerts_and_audits(self, pipeline, make_event, channels, cache):
        assert await pipeline.process_event(make_event(data={"query": "' OR 1=1"})) is True

        entries = await _stored_entries(pipeline)
        assert entries[0].event_type == "threat_detected"
        assert entries[0].severity == Severity.CRITICAL

        threat_alerts = [a for a in channels["log"].sent if a.type == AlertType.THREAT]
        assert len(threat_alerts) == 1
        assert threat_alerts[0].identifier == "198.51.100.10"
        assert "sql_injection" in threat_alerts[0].payload["threat_types"]
        assert pipeline.stats()["threats"] == 1
        assert await cache.get(THREATS_TOTAL) == "1"

    @pytest.mark.asyncio
    async def test_repeat_threat_is_cooled_down(self, pipeline, make_event, channels):
        for _ in range(3):
            await pipeline.process_event(make_event(data={"query": "' OR 1=1"}))

        assert len([a for a in channels["log"].sent if a.type == AlertType.THREAT]) == 1
        assert len(await _stored_entries(pipeline)) == 3

    @pytest.mark.asyncio
    async def test_policy_violation_records_violation(self, pipeline, make_event, channels):
        await pipeline.process_event(
            make_event(data={"message": "they want to destroy everything"}, event_type="data_access")
        )
        await pipeline.audit_trail.flush()

        violations = await pipeline.audit_trail.list_violations()
        assert len(violations) == 1
        assert violations[0].severity == Severity.CRITICAL
        compliance_alerts = [a for a in channels["audit"].sent if a.type == AlertType.COMPLIANCE]
        assert len(compliance_alerts) == 1
        assert compliance_alerts[0].level == Severity.CRITICAL
        assert pipeline.stats()["violations"] == 1

    @pytest.mark.asyncio
    async def test_auth_failure_counted(self, pipeline, make_event, cache):
        await pipeline.process_event(make_event(event_type="authentication_failure"))

        assert await cache.get("metrics:auth:failures") == "1"
        assert await cache.get(REQUESTS_TOTAL) == "1"


class TestFailureIsolation:
    """Tests for degraded operation when a stage fails."""

    @pytest.mark.asyncio
    async def test_threat_scorer_failure_uses_neutral_result(self, pipeline, make_event):
        pipeline.threat_scorer.analyze = AsyncMock(side_effect=RuntimeError("rules broken"))

        assert await pipeline.process_event(make_event(data={"query": "' OR 1=1"})) is True

        entries = await _stored_entries(pipeline)
        assert entries[0].event_type == "security_event"
        assert entries[0].event_data["threat_analysis"]["metadata"] == {"degraded": True}
        assert pipeline.stats()["scorer_errors"] == 1

    @pytest.mark.asyncio
    async def test_compliance_failure_uses_neutral_result(self, pipeline, make_event):
        pipeline.compliance_scorer.check_event = MagicMock(side_effect=RuntimeError("bad regex"))

        assert await pipeline.process_event(make_event()) is True

        entries = await _stored_entries(pipeline)
        assert entries[0].compliance["compliant"] is True
        assert entries[0].compliance["metadata"]["degraded"] is True

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_reject(self, pipeline, make_event):
        pipeline.audit_trail.record = AsyncMock(side_effect=RuntimeError("disk full"))

        assert await pipeline.process_event(make_event()) is True
        assert pipeline.stats()["audit_errors"] == 1

    @pytest.mark.asyncio
    async def test_alert_failure_does_not_reject(self, pipeline, make_event):
        pipeline.dispatcher.notify_threat = AsyncMock(side_effect=RuntimeError("cache gone"))

        assert await pipeline.process_event(make_event(data={"query": "' OR 1=1"})) is True
        assert pipeline.stats()["alert_errors"] == 1


class TestScheduledOperations:
    """Tests for the operations driven by the scheduler."""

    @pytest.mark.asyncio
    async def test_integrity_check_intact(self, pipeline, make_event, channels):
        for _ in range(3):
            await pipeline.process_event(make_event())

        report = await pipeline.run_integrity_check(utcnow().date())

        assert report.total_logs == 3
        assert report.is_intact is True
        assert channels["email"].sent == []

    @pytest.mark.asyncio
    async def test_integrity_failure_raises_critical_alert(
        self, pipeline, make_event, store, channels
    ):
        for _ in range(3):
            await pipeline.process_event(make_event())
        await pipeline.audit_trail.flush()
        victim = next(iter(store.audit_logs.values()))
        victim["event_type"] = "login_success"

        report = await pipeline.run_integrity_check(utcnow().date())

        assert report.invalid_ids == [victim["id"]]
        alerts = channels["email"].sent
        assert len(alerts) == 1
        assert alerts[0].level == Severity.CRITICAL
        assert alerts[0].identifier == f"integrity:{utcnow().date().isoformat()}"

    @pytest.mark.asyncio
    async def test_daily_report(self, pipeline, make_event):
        await pipeline.process_event(make_event(data={"query": "' OR 1=1"}))

        report = await pipeline.generate_daily_report()

        assert report["threats"]["total_threats"] == 1
        assert report["alerts"]["by_type"]["threat"] == 1
        assert report["compliance"]["total_checks"] == 1
        assert report["stats"]["processed"] == 1
        assert report["integrity"] is None
        entries = await _stored_entries(pipeline)
        assert "daily_report" in {e.event_type for e in entries}

    @pytest.mark.asyncio
    async def test_security_scan(self, pipeline):
        report = await pipeline.run_security_scan()

        assert report["health"]["overall_status"] == "healthy"
        assert report["compliance"]["risk_level"] == "low"
        entries = await _stored_entries(pipeline)
        assert [e.event_type for e in entries] == ["security_scan"]

    @pytest.mark.asyncio
    async def test_sample_metrics(self, pipeline, make_event):
        await pipeline.process_event(make_event())

        await pipeline.sample_metrics()

        assert pipeline.monitor.current.security.requests_processed == 1
        assert (await pipeline.monitor.last_health_status()) is not None

    @pytest.mark.asyncio
    async def test_cleanup(self, pipeline):
        counts = await pipeline.run_cleanup()

        assert isinstance(counts, CleanupCounts)
        assert counts.total == 0

    @pytest.mark.asyncio
    async def test_check_compliance(self, pipeline):
        result = await pipeline.check_compliance("plain fraud")

        assert result.compliant is False
        assert pipeline.compliance_scorer.stats()["checks_performed"] == 1


class TestShutdown:
    """Tests for the final flush."""

    @pytest.mark.asyncio
    async def test_shutdown_flushes_buffer(self, pipeline, make_event, store):
        for _ in range(2):
            await pipeline.process_event(make_event())

        await pipeline.shutdown(grace_seconds=1.0)

        assert len(store.audit_logs) == 2

    @pytest.mark.asyncio
    async def test_shutdown_survives_store_failure(self, pipeline, make_event, store):
        await pipeline.process_event(make_event())
        store.insert_audit_entries = AsyncMock(side_effect=ConnectionError("gone"))

        await pipeline.shutdown(grace_seconds=1.0)

        assert pipeline.audit_trail.buffer_size == 1

    @pytest.mark.asyncio
    async def test_flush_error_surfaces_to_scheduler(self, pipeline, make_event, store):
        await pipeline.process_event(make_event())
        store.insert_audit_entries = AsyncMock(side_effect=ConnectionError("gone"))

        with pytest.raises(AuditStoreError):
            await pipeline.flush_audit()
