"""
Unit tests for threat scoring.
"""

import asyncio
import time

import pytest

from vigil.detection.geo import StaticGeoLookup
from vigil.detection.threat import ThreatScorer
from vigil.models.event import SecurityEvent
from vigil.models.results import ThreatAnalysisResult
from vigil.models.severity import Severity
from vigil.store.cache import MemoryCache


def _event(make_event, **kwargs) -> SecurityEvent:
    return SecurityEvent.from_payload(make_event(**kwargs))


class BrokenGeo:
    def lookup(self, ip):
        raise RuntimeError("geo database unavailable")


class TestThreatScorerBasics:
    """Tests for single-event classification."""

    @pytest.mark.asyncio
    async def test_clean_event_is_not_threat(self, threat_scorer, make_event):
        """Ordinary traffic produces no evidence."""
        result = await threat_scorer.analyze(_event(make_event))

        assert result.is_threat is False
        assert result.threat_types == []
        assert result.severity == Severity.LOW
        assert result.confidence == 0.0
        assert result.constitutional_compliant is True

    @pytest.mark.asyncio
    async def test_blacklisted_ip(self, threat_scorer, make_event):
        """A blocked source is a high severity threat."""
        await threat_scorer.block_ip("192.0.2.66")

        result = await threat_scorer.analyze(_event(make_event, ip="192.0.2.66"))

        assert result.is_threat is True
        assert "blacklisted_ip" in result.threat_types
        assert result.severity == Severity.HIGH
        assert result.source_ip == "192.0.2.66"

    @pytest.mark.asyncio
    async def test_sql_injection(self, threat_scorer, make_event):
        """Classic tautology injection is critical."""
        result = await threat_scorer.analyze(
            _event(make_event, data={"query": "' OR 1=1"})
        )

        assert result.is_threat is True
        assert "sql_injection" in result.threat_types
        assert result.severity == Severity.CRITICAL
        assert result.metadata["sql_injection"]["matched_content"]

    @pytest.mark.asyncio
    async def test_xss_and_traversal_keep_highest_severity(self, threat_scorer, make_event):
        """Multiple categories never lower the severity."""
        result = await threat_scorer.analyze(
            _event(
                make_event,
                data={"q": "<script>alert(1)</script>", "file": "../../etc/passwd", "x": "1 or 1=1"},
            )
        )

        assert {"xss_attack", "directory_traversal", "sql_injection"} <= set(result.threat_types)
        assert result.severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_policy_language_forces_threat(self, threat_scorer, make_event):
        """Policy hits mark the event non-compliant and a threat."""
        result = await threat_scorer.analyze(
            _event(make_event, data={"message": "how to hack the server"})
        )

        assert result.constitutional_compliant is False
        assert result.is_threat is True
        assert "policy_violation" in result.threat_types
        assert result.metadata["policy_violations"] == ["harmful_activity_promotion"]

    @pytest.mark.asyncio
    async def test_confidence_is_clamped(self, threat_scorer, make_event):
        """Many contributions still cap at 1.0."""
        await threat_scorer.block_ip("192.0.2.66")

        result = await threat_scorer.analyze(
            _event(
                make_event,
                ip="192.0.2.66",
                data={"q": "' OR 1=1; <script>x</script> hack"},
            )
        )

        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_admin_endpoint_alone_is_not_threat(self, threat_scorer, make_event):
        """Weak evidence below the thresholds is tagged but not flagged."""
        result = await threat_scorer.analyze(
            _event(make_event, data={"endpoint": "/admin/users", "method": "GET"})
        )

        assert "admin_access_attempt" in result.threat_types
        assert result.is_threat is False

    @pytest.mark.asyncio
    async def test_deterministic(self, make_event):
        """Same input with same counter state scores the same."""
        payload = make_event(data={"q": "UNION ALL SELECT password FROM users"})

        first = await ThreatScorer(MemoryCache()).analyze(SecurityEvent.from_payload(payload))
        second = await ThreatScorer(MemoryCache()).analyze(SecurityEvent.from_payload(payload))

        assert first.threat_types == second.threat_types
        assert first.severity == second.severity
        assert first.confidence == second.confidence
        assert first.is_threat == second.is_threat


class TestThreatScorerCounters:
    """Tests for analyzers backed by cache counters."""

    @pytest.mark.asyncio
    async def test_rate_limit_trips_after_limit(self, cache, make_event):
        """The request after the per-minute limit is flagged."""
        scorer = ThreatScorer(cache, rate_limit_per_minute=100, burst_threshold=1000)
        event = _event(make_event)

        for _ in range(100):
            result = await scorer.analyze(event)
            assert "rate_limit_exceeded" not in result.threat_types

        result = await scorer.analyze(event)
        assert "rate_limit_exceeded" in result.threat_types
        assert result.metadata["request_count"] == 101

    @pytest.mark.asyncio
    async def test_rate_window_expires(self, cache, clock, make_event):
        """The per-minute counter resets when its TTL lapses."""
        scorer = ThreatScorer(cache, rate_limit_per_minute=2, burst_threshold=1000)
        event = _event(make_event)

        for _ in range(3):
            result = await scorer.analyze(event)
        assert "rate_limit_exceeded" in result.threat_types

        clock.advance(61)
        result = await scorer.analyze(event)
        assert "rate_limit_exceeded" not in result.threat_types

    @pytest.mark.asyncio
    async def test_burst_detection(self, cache, make_event):
        """More requests than the burst threshold inside the window is a DDoS attempt."""
        scorer = ThreatScorer(cache, burst_threshold=5, clock=lambda: 5000.0)
        event = _event(make_event)

        for _ in range(5):
            result = await scorer.analyze(event)
        assert "ddos_attempt" not in result.threat_types

        result = await scorer.analyze(event)
        assert "ddos_attempt" in result.threat_types
        assert result.is_threat is True

    @pytest.mark.asyncio
    async def test_suspicious_timing(self, cache, threat_scorer, make_event):
        """Odd-hour access from an already suspicious IP is tagged."""
        await cache.set("threat:suspicious_score:198.51.100.10", "0.9")

        result = await threat_scorer.analyze(
            _event(make_event, timestamp="2026-03-02T03:15:00Z")
        )

        assert "suspicious_timing" in result.threat_types

    @pytest.mark.asyncio
    async def test_daily_summary(self, threat_scorer, make_event):
        """Detected threats are totalled per day."""
        await threat_scorer.block_ip("192.0.2.66")
        for _ in range(2):
            await threat_scorer.analyze(_event(make_event, ip="192.0.2.66"))
        await threat_scorer.analyze(_event(make_event))

        summary = await threat_scorer.daily_summary()

        assert summary["total_threats"] == 2
        assert summary["threat_types"]["blacklisted_ip"] == 2
        assert summary["top_sources"][0] == {"ip": "192.0.2.66", "count": 2}

    @pytest.mark.asyncio
    async def test_load_blacklist(self, threat_scorer):
        added = await threat_scorer.load_blacklist(["192.0.2.1", "192.0.2.2", "192.0.2.1"])

        assert added == 2
        assert await threat_scorer.is_blacklisted("192.0.2.2") is True
        assert await threat_scorer.is_blacklisted("192.0.2.3") is False


class TestThreatScorerSourceAnalysis:
    """Tests for geolocation and user agent evidence."""

    @pytest.mark.asyncio
    async def test_high_risk_country_and_vpn(self, cache, make_event):
        geo = StaticGeoLookup({"203.0.113.0/24": {"country": "RU", "org": "Example VPN Hosting"}})
        scorer = ThreatScorer(cache, geo=geo)

        result = await scorer.analyze(_event(make_event, ip="203.0.113.7"))

        assert "high_risk_country" in result.threat_types
        assert "vpn_tor_usage" in result.threat_types
        assert result.metadata["geolocation"] == {"country": "RU", "org": "Example VPN Hosting"}

    @pytest.mark.asyncio
    async def test_bot_user_agent(self, threat_scorer, make_event):
        result = await threat_scorer.analyze(
            _event(make_event, user_agent="python-requests/2.31.0")
        )

        assert "suspicious_bot" in result.threat_types

    @pytest.mark.asyncio
    async def test_outdated_browser(self, threat_scorer, make_event):
        result = await threat_scorer.analyze(
            _event(
                make_event,
                user_agent="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/70.0.3538.77 Safari/537.36",
            )
        )

        assert "outdated_browser" in result.threat_types
        assert result.metadata["user_agent"]["version"] == 70

    @pytest.mark.asyncio
    async def test_safari_on_windows_is_spoofing(self, threat_scorer, make_event):
        result = await threat_scorer.analyze(
            _event(
                make_event,
                user_agent="Mozilla/5.0 (Windows NT 10.0) AppleWebKit/605.1.15 "
                "(KHTML, like Gecko) Version/16.0 Safari/605.1.15",
            )
        )

        assert "user_agent_spoofing" in result.threat_types

    @pytest.mark.asyncio
    async def test_failing_analyzer_is_isolated(self, cache, make_event):
        """One broken analyzer does not stop the others."""
        await cache.sadd("security:blocked_ips", "192.0.2.66")
        scorer = ThreatScorer(cache, geo=BrokenGeo())

        result = await scorer.analyze(_event(make_event, ip="192.0.2.66"))

        assert result.metadata["analyzer_errors"] == ["geolocation"]
        assert "blacklisted_ip" in result.threat_types
        assert scorer.stats()["analyzer_errors"] == 1


class TestThreatScorerLargePayloads:
    """Tests for bounded pattern scanning of large payloads."""

    @pytest.mark.asyncio
    async def test_megabyte_payload_is_scored_quickly(self, threat_scorer, make_event):
        """Keyword-dense megabyte payloads finish well inside a request budget."""
        event = _event(make_event, data={"q": "personal csrf union " * 60000})

        started = time.perf_counter()
        result = await threat_scorer.analyze(event)
        elapsed = time.perf_counter() - started

        assert elapsed < 2.0
        assert "oversized_payload" in result.threat_types

    @pytest.mark.asyncio
    async def test_attack_in_leading_text_of_large_payload(self, threat_scorer, make_event):
        """Patterns still fire on the scanned prefix of an oversized payload."""
        event = _event(make_event, data={"q": "<script>alert(1)</script>" + "a" * 200000})

        result = await threat_scorer.analyze(event)

        assert "xss_attack" in result.threat_types
        assert "oversized_payload" in result.threat_types

    @pytest.mark.asyncio
    async def test_pattern_pass_does_not_block_event_loop(self, threat_scorer, make_event):
        """Other coroutines keep running while the patterns are matched."""

        def slow_match(text):
            time.sleep(0.3)
            return []

        threat_scorer._match_categories = slow_match
        analysis = asyncio.create_task(threat_scorer.analyze(_event(make_event)))

        await asyncio.sleep(0.05)
        assert not analysis.done()

        result = await analysis
        assert result.is_threat is False


class TestThreatAnalysisResult:
    """Tests for the result helpers."""

    def test_severity_only_moves_up(self):
        result = ThreatAnalysisResult()
        result.raise_severity(Severity.CRITICAL)
        result.raise_severity(Severity.MEDIUM)

        assert result.severity == Severity.CRITICAL

    def test_threat_types_are_unique(self):
        result = ThreatAnalysisResult()
        result.add_threat_type("sql_injection")
        result.add_threat_type("sql_injection")

        assert result.threat_types == ["sql_injection"]

    def test_neutral_result(self):
        result = ThreatAnalysisResult.neutral(event_id="e1", source_ip="192.0.2.1")

        assert result.is_threat is False
        assert result.metadata == {"degraded": True}
