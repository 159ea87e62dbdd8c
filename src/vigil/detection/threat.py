"""
Threat scoring for security events.

Independent analyzers each add evidence to a shared result:
- IP reputation: blacklist, per-minute request rate, odd-hour access
- Payload patterns: categories from the threat rule table
- Anomalous activity: request bursts, admin endpoints, oversized payloads
- Geolocation: high-risk countries, VPN/hosting networks
- User agent: outdated browsers, bot signatures, implausible combinations
- Policy language: always forces a threat and marks the event non-compliant

Confidence contributions are fixed constants and the final decision uses
a fixed threshold table, so identical input with identical counter state
always scores the same.

Regex passes see only the first MAX_SCAN_CHARS of the serialized payload
and run in a worker thread. The oversized check uses the full size.
"""

import asyncio
import json
import logging
import time
from collections import Counter
from datetime import date
from typing import Any, Callable, Optional

from vigil.detection.geo import GeoLookup, StaticGeoLookup
from vigil.detection.rules import MAX_SCAN_CHARS, ThreatCategory, ThreatRules, load_threat_rules
from vigil.detection.useragent import parse_user_agent
from vigil.models.event import SecurityEvent
from vigil.models.results import ThreatAnalysisResult
from vigil.models.severity import Severity
from vigil.store.cache import CacheStore
from vigil.utils import serialize_payload, utc_isoformat, utcnow

logger = logging.getLogger(__name__)

BLOCKED_IPS_KEY = "security:blocked_ips"

# Confidence contributions
BLACKLIST_CONFIDENCE = 0.9
RATE_LIMIT_CONFIDENCE = 0.7
SUSPICIOUS_TIMING_CONFIDENCE = 0.3
PATTERN_CONFIDENCE = 0.8
BURST_CONFIDENCE = 0.8
ADMIN_ENDPOINT_CONFIDENCE = 0.5
OVERSIZED_PAYLOAD_CONFIDENCE = 0.4
HIGH_RISK_COUNTRY_CONFIDENCE = 0.3
VPN_CONFIDENCE = 0.2
OUTDATED_BROWSER_CONFIDENCE = 0.2
BOT_CONFIDENCE = 0.6
SPOOFING_CONFIDENCE = 0.5
POLICY_CONFIDENCE = 0.9

# Odd-hour window (UTC, inclusive) and the suspicion score needed to flag it
SUSPICIOUS_HOURS = range(2, 6)
SUSPICION_SCORE_THRESHOLD = 0.5

# Decision thresholds by accumulated severity
THRESHOLDS = {
    Severity.CRITICAL: 0.9,
    Severity.HIGH: 0.7,
    Severity.MEDIUM: 0.5,
}
LOW_THRESHOLD = 0.3
LOW_MIN_CATEGORIES = 3

DAILY_THREATS_TTL = 86400
DAILY_THREATS_MAX = 10000
MATCHED_CONTENT_MAX = 200


def scan_text(data: Any) -> str:
    """Leading part of the serialized payload that rule patterns run against."""
    return serialize_payload(data)[:MAX_SCAN_CHARS]


class ThreatScorer:
    """
    Classifies events as threats.

    Usage:
        scorer = ThreatScorer(cache, geo=StaticGeoLookup(settings.geoip_networks))
        result = await scorer.analyze(event)
    """

    def __init__(
        self,
        cache: CacheStore,
        rules: Optional[ThreatRules] = None,
        geo: Optional[GeoLookup] = None,
        high_risk_countries: Optional[list[str]] = None,
        rate_limit_per_minute: int = 100,
        burst_window_seconds: int = 300,
        burst_threshold: int = 50,
        max_payload_bytes: int = 100000,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            cache: Counter store for rate, burst and blacklist state
            rules: Compiled rule table; the bundled table is loaded when None
            geo: Geolocation lookup; no geolocation evidence when None
            high_risk_countries: ISO country codes
            rate_limit_per_minute: Requests per IP per minute before flagging
            burst_window_seconds: Sliding window for burst detection
            burst_threshold: Requests inside the window before flagging
            max_payload_bytes: Serialized payload size considered oversized
            clock: Wall-clock seconds, injectable for tests
        """
        self._cache = cache
        self._rules = rules or load_threat_rules()
        self._geo = geo or StaticGeoLookup()
        self._high_risk_countries = {
            c.upper() for c in (high_risk_countries or ["CN", "RU", "KP", "IR"])
        }
        self._rate_limit = rate_limit_per_minute
        self._burst_window = burst_window_seconds
        self._burst_threshold = burst_threshold
        self._max_payload = max_payload_bytes
        self._clock = clock or time.time
        self._stats = {
            "threats_analyzed": 0,
            "threats_detected": 0,
            "analyzer_errors": 0,
        }

    async def analyze(self, event: SecurityEvent) -> ThreatAnalysisResult:
        """
        Run every analyzer against an event.

        Args:
            event: Validated event

        Returns:
            ThreatAnalysisResult, fully scored
        """
        self._stats["threats_analyzed"] += 1
        result = ThreatAnalysisResult(source_ip=event.source_ip, event_id=event.id)

        analyzers = [
            ("ip", self._analyze_ip),
            ("activity", self._analyze_activity),
            ("patterns", self._analyze_patterns),
            ("geolocation", self._analyze_geolocation),
            ("user_agent", self._analyze_user_agent),
            ("policy", self._analyze_policy),
        ]
        for name, analyzer in analyzers:
            try:
                await analyzer(event, result)
            except Exception:
                self._stats["analyzer_errors"] += 1
                result.metadata.setdefault("analyzer_errors", []).append(name)
                logger.exception(f"Threat analyzer '{name}' failed for event {event.id}")

        self._finalize(result)

        if result.is_threat:
            self._stats["threats_detected"] += 1
            logger.warning(
                f"Threat detected: types={result.threat_types} severity={result.severity.value} "
                f"confidence={result.confidence:.2f} source={event.source_ip}"
            )
            await self._record_threat(event, result)

        return result

    # --- analyzers ---

    async def _analyze_ip(self, event: SecurityEvent, result: ThreatAnalysisResult) -> None:
        ip = event.source_ip
        if not ip:
            return

        if await self._cache.sismember(BLOCKED_IPS_KEY, ip):
            result.is_threat = True
            result.add_threat_type("blacklisted_ip")
            result.raise_severity(Severity.HIGH)
            result.confidence += BLACKLIST_CONFIDENCE

        key = f"threat:ip_requests:{ip}"
        count = await self._cache.incr(key)
        if count == 1:
            await self._cache.expire(key, 60)
        if count > self._rate_limit:
            result.is_threat = True
            result.add_threat_type("rate_limit_exceeded")
            result.raise_severity(Severity.MEDIUM)
            result.confidence += RATE_LIMIT_CONFIDENCE
            result.metadata["request_count"] = count

        if event.occurred_at.hour in SUSPICIOUS_HOURS:
            score = float(await self._cache.get(f"threat:suspicious_score:{ip}") or 0)
            if score > SUSPICION_SCORE_THRESHOLD:
                result.add_threat_type("suspicious_timing")
                result.confidence += SUSPICIOUS_TIMING_CONFIDENCE
                result.metadata["suspicion_score"] = score

    def _match_categories(
        self, text: str
    ) -> list[tuple[ThreatCategory, list[str], Optional[str]]]:
        hits = []
        for category in self._rules.categories:
            matched = []
            content = None
            for pattern in category.patterns:
                match = pattern.search(text)
                if match:
                    matched.append(pattern.pattern)
                    if content is None:
                        content = match.group(0)[:MATCHED_CONTENT_MAX]
            if matched:
                hits.append((category, matched, content))
        return hits

    async def _analyze_patterns(self, event: SecurityEvent, result: ThreatAnalysisResult) -> None:
        text = scan_text(event.data)
        hits = await asyncio.to_thread(self._match_categories, text)

        for category, matched, content in hits:
            result.is_threat = True
            result.add_threat_type(category.name)
            result.raise_severity(category.severity)
            result.confidence += PATTERN_CONFIDENCE
            result.metadata[category.name] = {
                "patterns_matched": matched,
                "matched_content": content,
            }

            if category.name == "policy_violation":
                result.constitutional_compliant = False
                logger.error(f"Policy violation language in event {event.id}: {matched}")

    async def _analyze_activity(self, event: SecurityEvent, result: ThreatAnalysisResult) -> None:
        ip = event.source_ip
        if ip:
            now = self._clock()
            key = f"threat:recent_requests:{ip}"
            await self._cache.lpush(key, repr(now))
            await self._cache.ltrim(key, 0, self._burst_threshold)
            await self._cache.expire(key, self._burst_window)
            cutoff = now - self._burst_window
            recent = [t for t in await self._cache.lrange(key, 0, -1) if float(t) > cutoff]
            if len(recent) > self._burst_threshold:
                result.is_threat = True
                result.add_threat_type("ddos_attempt")
                result.raise_severity(Severity.HIGH)
                result.confidence += BURST_CONFIDENCE
                result.metadata["recent_requests"] = len(recent)

        if isinstance(event.data, dict):
            endpoint = event.data.get("endpoint") or event.data.get("path")
            if isinstance(endpoint, str) and self._rules.admin_endpoint.search(endpoint):
                result.add_threat_type("admin_access_attempt")
                result.confidence += ADMIN_ENDPOINT_CONFIDENCE

        size = len(serialize_payload(event.data).encode("utf-8"))
        if size > self._max_payload:
            result.add_threat_type("oversized_payload")
            result.confidence += OVERSIZED_PAYLOAD_CONFIDENCE
            result.metadata["payload_size"] = size

    async def _analyze_geolocation(
        self, event: SecurityEvent, result: ThreatAnalysisResult
    ) -> None:
        ip = event.source_ip
        if not ip:
            return
        geo = self._geo.lookup(ip)
        if geo is None:
            return

        result.metadata["geolocation"] = geo.to_dict()
        if geo.country and geo.country.upper() in self._high_risk_countries:
            result.add_threat_type("high_risk_country")
            result.confidence += HIGH_RISK_COUNTRY_CONFIDENCE
        if geo.org and self._rules.vpn_org.search(geo.org):
            result.add_threat_type("vpn_tor_usage")
            result.confidence += VPN_CONFIDENCE

    async def _analyze_user_agent(
        self, event: SecurityEvent, result: ThreatAnalysisResult
    ) -> None:
        user_agent = event.source.user_agent
        if not user_agent:
            return

        info = parse_user_agent(user_agent)
        result.metadata["user_agent"] = info.to_dict()

        minimum = self._rules.minimum_browser_versions.get(info.browser or "")
        if minimum and info.version is not None and info.version < minimum:
            result.add_threat_type("outdated_browser")
            result.confidence += OUTDATED_BROWSER_CONFIDENCE

        if info.crawler or any(p.search(user_agent) for p in self._rules.bot_signatures):
            result.add_threat_type("suspicious_bot")
            result.confidence += BOT_CONFIDENCE

        if info.os == "Windows" and info.browser == "Safari":
            result.add_threat_type("user_agent_spoofing")
            result.confidence += SPOOFING_CONFIDENCE

    def _match_policy(self, text: str) -> list[str]:
        return [name for name, p in self._rules.policy_checks.items() if p.search(text)]

    async def _analyze_policy(self, event: SecurityEvent, result: ThreatAnalysisResult) -> None:
        text = scan_text(event.data)
        hits = await asyncio.to_thread(self._match_policy, text)
        if not hits:
            return

        result.constitutional_compliant = False
        result.is_threat = True
        result.add_threat_type("policy_violation")
        result.raise_severity(Severity.HIGH)
        result.confidence += POLICY_CONFIDENCE
        result.metadata["policy_violations"] = hits
        logger.error(f"Policy violations in event {event.id}: {hits}")

    # --- scoring ---

    @staticmethod
    def _finalize(result: ThreatAnalysisResult) -> None:
        result.confidence = max(0.0, min(1.0, result.confidence))

        threshold = THRESHOLDS.get(result.severity)
        if threshold is not None and result.confidence >= threshold:
            result.is_threat = True
        elif (
            result.confidence >= LOW_THRESHOLD
            and len(result.threat_types) >= LOW_MIN_CATEGORIES
        ):
            result.is_threat = True

        # Policy violations are always threats
        if not result.constitutional_compliant:
            result.is_threat = True

    # --- daily summary ---

    async def _record_threat(self, event: SecurityEvent, result: ThreatAnalysisResult) -> None:
        key = f"threat:daily:{utcnow().date().isoformat()}"
        record = json.dumps(
            {
                "event_id": event.id,
                "source_ip": event.source_ip,
                "threat_types": result.threat_types,
                "severity": result.severity.value,
                "confidence": result.confidence,
                "timestamp": utc_isoformat(result.analyzed_at),
            }
        )
        try:
            await self._cache.lpush(key, record)
            await self._cache.ltrim(key, 0, DAILY_THREATS_MAX - 1)
            await self._cache.expire(key, DAILY_THREATS_TTL)
        except Exception as e:
            logger.warning(f"Threat record caching failed: {e}")

    async def daily_summary(self, day: Optional[date] = None) -> dict[str, Any]:
        """
        Totals of the day's detected threats.

        Returns:
            Dict with total_threats, threat_types, severity_distribution
            and top_sources (at most 10, most frequent first)
        """
        day_key = (day or utcnow().date()).isoformat()
        try:
            raw = await self._cache.lrange(f"threat:daily:{day_key}", 0, -1)
        except Exception as e:
            logger.warning(f"Daily threat summary failed: {e}")
            return {"date": day_key, "total_threats": 0}

        threats = [json.loads(item) for item in raw]
        types: Counter = Counter()
        severities: Counter = Counter()
        sources: Counter = Counter()
        for threat in threats:
            types.update(threat.get("threat_types", []))
            severities[threat.get("severity", Severity.LOW.value)] += 1
            if threat.get("source_ip"):
                sources[threat["source_ip"]] += 1

        return {
            "date": day_key,
            "total_threats": len(threats),
            "threat_types": dict(types),
            "severity_distribution": dict(severities),
            "top_sources": [{"ip": ip, "count": n} for ip, n in sources.most_common(10)],
        }

    # --- blacklist ---

    async def block_ip(self, ip: str) -> None:
        await self._cache.sadd(BLOCKED_IPS_KEY, ip)
        logger.info(f"Blocked IP {ip}")

    async def load_blacklist(self, ips: list[str]) -> int:
        """Seed the blocked set, returning how many addresses were new."""
        if not ips:
            return 0
        added = await self._cache.sadd(BLOCKED_IPS_KEY, *ips)
        logger.info(f"Loaded {added} IPs to blacklist")
        return added

    async def is_blacklisted(self, ip: str) -> bool:
        return await self._cache.sismember(BLOCKED_IPS_KEY, ip)

    def neutral(self, event: Optional[SecurityEvent] = None) -> ThreatAnalysisResult:
        if event is None:
            return ThreatAnalysisResult.neutral()
        return ThreatAnalysisResult.neutral(event_id=event.id, source_ip=event.source_ip)

    def stats(self) -> dict[str, Any]:
        return dict(self._stats)
