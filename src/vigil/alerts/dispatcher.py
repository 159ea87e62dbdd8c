"""
Cooldown-gated alert dispatch.

Per (alert type, identifier) pair the dispatcher is either idle or
cooling down. Entering cooldown is a single atomic SET NX EX on
``alert:cooldown:{type}:{identifier}``; while the key exists further
alerts for the pair are dropped. The key's TTL returns the pair to idle.

Critical compliance violations and integrity failures bypass cooldown
and do not start one.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional, Union

from vigil.alerts.channels import AlertChannel, EmailChannel, WebhookChannel, require_channel
from vigil.config import Settings
from vigil.errors import ChannelDeliveryError, ChannelNotConfiguredError
from vigil.models.alert import Alert, AlertType
from vigil.models.audit import IntegrityReport
from vigil.models.results import ComplianceResult, ThreatAnalysisResult
from vigil.models.severity import Severity
from vigil.store.cache import CacheStore
from vigil.utils import utcnow

logger = logging.getLogger(__name__)

DAILY_TTL = 2 * 24 * 3600
CONTEXT_LIMIT = 200


@dataclass(frozen=True)
class AlertTypeConfig:
    cooldown: int
    channels: tuple[str, ...]


DEFAULT_ALERT_CONFIG: dict[AlertType, AlertTypeConfig] = {
    AlertType.THREAT: AlertTypeConfig(300, ("email", "webhook", "log")),
    AlertType.COMPLIANCE: AlertTypeConfig(600, ("email", "webhook", "log", "audit")),
    AlertType.SYSTEM: AlertTypeConfig(900, ("email", "log")),
}


def cooldown_key(alert_type: AlertType, identifier: str) -> str:
    return f"alert:cooldown:{alert_type.value}:{identifier}"


def compliance_level(score: float) -> Severity:
    """Alert level for a compliance score."""
    if score < 0.5:
        return Severity.CRITICAL
    if score < 0.7:
        return Severity.HIGH
    if score < 0.9:
        return Severity.MEDIUM
    return Severity.LOW


def recommended_actions(alert_type: AlertType, data: dict[str, Any]) -> list[str]:
    """Operator follow-ups for an alert."""
    actions = []
    if alert_type == AlertType.THREAT:
        actions.append("Consider blocking the source IP address")
        threat_types = data.get("threat_types", [])
        if "sql_injection" in threat_types:
            actions.append("Review database access permissions")
        if "policy_violation" in threat_types:
            actions.append("Review policy compliance of the request immediately")
    elif alert_type == AlertType.COMPLIANCE:
        actions.append("Review policy compliance status")
        actions.append("Analyze violation details")
        if data.get("compliance_score", 1.0) < 0.5:
            actions.append("Consider suspending the affected service")
    else:
        actions.append("Check system status")
        if data.get("status") == "error":
            actions.append("Review logs in detail")
        if data.get("status") == "integrity_violation":
            actions.append("Investigate the tampered audit entries and preserve evidence")
    return actions


class AlertDispatcher:
    """
    Turns scorer and monitor output into notifications.

    Usage:
        dispatcher = AlertDispatcher(cache, build_channels(settings, cache))
        await dispatcher.notify_threat(threat_result)
    """

    def __init__(
        self,
        cache: CacheStore,
        channels: dict[str, AlertChannel],
        config: Optional[dict[AlertType, AlertTypeConfig]] = None,
        channel_timeout: float = 10.0,
    ):
        self._cache = cache
        self._channels = channels
        self._config = dict(config or DEFAULT_ALERT_CONFIG)
        self.channel_timeout = channel_timeout

        self._stats: dict[str, Any] = {
            "alerts_sent": 0,
            "alerts_suppressed": 0,
            "cooldown_bypassed": 0,
            "channel_failures": 0,
            "deliveries": {},
            "last_alert": None,
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, cache: CacheStore, channels: dict[str, AlertChannel]
    ) -> "AlertDispatcher":
        config = {
            AlertType.THREAT: AlertTypeConfig(
                settings.threat_alert_cooldown_seconds,
                DEFAULT_ALERT_CONFIG[AlertType.THREAT].channels,
            ),
            AlertType.COMPLIANCE: AlertTypeConfig(
                settings.compliance_alert_cooldown_seconds,
                DEFAULT_ALERT_CONFIG[AlertType.COMPLIANCE].channels,
            ),
            AlertType.SYSTEM: AlertTypeConfig(
                settings.system_alert_cooldown_seconds,
                DEFAULT_ALERT_CONFIG[AlertType.SYSTEM].channels,
            ),
        }
        return cls(cache, channels, config, settings.alert_channel_timeout_seconds)

    @property
    def channels(self) -> dict[str, AlertChannel]:
        return self._channels

    async def _enter_cooldown(self, alert_type: AlertType, identifier: str) -> bool:
        """Atomically claim the cooldown slot; False while already cooling down."""
        key = cooldown_key(alert_type, identifier)
        try:
            return await self._cache.set_if_absent(key, "1", self._config[alert_type].cooldown)
        except Exception as e:
            # An unreachable cache must not silence alerting
            logger.warning(f"Cooldown check failed for {key}, sending anyway: {e}")
            return True

    async def _deliver(self, name: str, alert: Alert) -> bool:
        try:
            channel = require_channel(self._channels, name)
        except ChannelNotConfiguredError:
            logger.debug(f"Channel {name} not configured, skipping alert {alert.id}")
            return False

        try:
            await asyncio.wait_for(channel.send(alert), timeout=self.channel_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Channel {name} timed out delivering alert {alert.id}")
        except ChannelDeliveryError as e:
            logger.warning(f"Channel delivery failed for alert {alert.id}: {e}")
        except Exception as e:
            logger.warning(f"Channel {name} raised delivering alert {alert.id}: {e}")
        else:
            deliveries = self._stats["deliveries"]
            deliveries[name] = deliveries.get(name, 0) + 1
            return True

        self._stats["channel_failures"] += 1
        return False

    async def _fan_out(self, alert: Alert) -> dict[str, bool]:
        names = self._config[alert.type].channels
        results = await asyncio.gather(*(self._deliver(name, alert) for name in names))
        return dict(zip(names, results))

    async def _count_daily(self, alert: Alert) -> None:
        prefix = f"alerts:daily:{alert.timestamp.date().isoformat()}"
        try:
            for key in (
                f"{prefix}:total",
                f"{prefix}:type:{alert.type.value}",
                f"{prefix}:level:{alert.level.value}",
            ):
                if await self._cache.incr(key) == 1:
                    await self._cache.expire(key, DAILY_TTL)
        except Exception as e:
            logger.warning(f"Daily alert counter update failed: {e}")

    async def notify(
        self,
        alert_type: Union[AlertType, str],
        payload: Optional[dict[str, Any]] = None,
        identifier: str = "general",
        level: Severity = Severity.MEDIUM,
        bypass_cooldown: bool = False,
    ) -> Optional[Alert]:
        """
        Dispatch an alert unless its (type, identifier) pair is cooling down.

        Args:
            alert_type: threat, compliance or system
            payload: Alert body
            identifier: Cooldown scope, e.g. the source IP
            level: Alert level
            bypass_cooldown: Send regardless of cooldown, without starting one

        Returns:
            The dispatched alert, or None if suppressed
        """
        alert_type = AlertType(alert_type)
        payload = payload or {}

        if bypass_cooldown:
            self._stats["cooldown_bypassed"] += 1
        elif not await self._enter_cooldown(alert_type, identifier):
            self._stats["alerts_suppressed"] += 1
            logger.debug(f"{alert_type.value} alert for {identifier} in cooldown period, skipping")
            return None

        alert = Alert(
            type=alert_type,
            level=level,
            identifier=identifier,
            payload=payload,
            recommended_actions=recommended_actions(alert_type, payload),
        )
        delivered = await self._fan_out(alert)
        await self._count_daily(alert)

        self._stats["alerts_sent"] += 1
        self._stats["last_alert"] = alert.timestamp
        logger.info(
            f"{alert_type.value.capitalize()} alert {alert.id} sent "
            f"(level={level.value}, identifier={identifier}, delivered={delivered})"
        )
        return alert

    async def notify_threat(self, result: ThreatAnalysisResult) -> Optional[Alert]:
        payload = {
            "severity": result.severity.value,
            "threat_types": list(result.threat_types),
            "confidence": result.confidence,
            "event_id": result.event_id,
            "source": {
                "ip": result.source_ip,
                "geolocation": result.metadata.get("geolocation"),
                "user_agent": result.metadata.get("user_agent"),
            },
            "constitutional_compliant": result.constitutional_compliant,
            "metadata": result.metadata,
        }
        return await self.notify(
            AlertType.THREAT,
            payload,
            identifier=result.source_ip or "general",
            level=result.severity,
        )

    async def notify_compliance(self, result: ComplianceResult) -> Optional[Alert]:
        """Compliance alert; any critical violation bypasses cooldown."""
        payload = {
            "compliance_score": result.score,
            "violations": [
                {
                    "principle": v.principle,
                    "description": v.description,
                    "severity": v.severity.value,
                    "confidence": v.confidence,
                    "context": [snippet[:CONTEXT_LIMIT] for snippet in v.context],
                }
                for v in result.violations
            ],
            "principles_checked": list(result.principles_checked),
            "metadata": result.metadata,
        }
        if not result.compliant:
            payload["priority"] = "high"
            payload["requires_immediate_attention"] = True

        return await self.notify(
            AlertType.COMPLIANCE,
            payload,
            level=compliance_level(result.score),
            bypass_cooldown=result.has_critical,
        )

    async def notify_system(
        self,
        status: str,
        message: str,
        identifier: str = "general",
        details: Optional[dict[str, Any]] = None,
        level: Optional[Severity] = None,
    ) -> Optional[Alert]:
        payload = {"status": status, "message": message, "details": details or {}}
        if level is None:
            level = Severity.HIGH if status == "error" else Severity.MEDIUM
        return await self.notify(AlertType.SYSTEM, payload, identifier=identifier, level=level)

    async def notify_integrity_failure(self, report: IntegrityReport) -> Optional[Alert]:
        """Critical system alert for tampered audit entries; never suppressed."""
        payload = {
            "status": "integrity_violation",
            "message": (
                f"{report.invalid_logs} of {report.total_logs} audit entries failed "
                f"integrity verification for {report.date.isoformat()}"
            ),
            "details": report.to_dict(),
        }
        return await self.notify(
            AlertType.SYSTEM,
            payload,
            identifier=f"integrity:{report.date.isoformat()}",
            level=Severity.CRITICAL,
            bypass_cooldown=True,
        )

    async def daily_summary(self, day: Optional[date] = None) -> dict[str, Any]:
        day = day or utcnow().date()
        prefix = f"alerts:daily:{day.isoformat()}"

        async def read(key: str) -> int:
            return int(await self._cache.get(key) or 0)

        return {
            "date": day.isoformat(),
            "total_alerts": await read(f"{prefix}:total"),
            "by_type": {t.value: await read(f"{prefix}:type:{t.value}") for t in AlertType},
            "by_level": {s.value: await read(f"{prefix}:level:{s.value}") for s in Severity},
        }

    async def send_report(self, report: dict[str, Any]) -> bool:
        """Mail a report; False when email is not configured or delivery failed."""
        channel = self._channels.get(EmailChannel.name)
        if not isinstance(channel, EmailChannel):
            logger.warning("Cannot send daily report: email not configured")
            return False

        stats = report.get("stats", {})
        compliance = report.get("compliance", {})
        body = "\n".join(
            [
                f"Vigil daily security report for {report.get('date')}",
                "",
                f"Events processed:   {stats.get('processed', 0)}",
                f"Threats detected:   {stats.get('threats', 0)}",
                f"Alerts sent:        {stats.get('alerts', 0)}",
                f"Compliance score:   {compliance.get('overall_compliance_score', 1.0) * 100:.1f}%",
                f"Policy violations:  {compliance.get('total_violations', 0)}",
                "",
                "The full report is attached as JSON.",
            ]
        )
        try:
            await asyncio.wait_for(
                channel.send_report(
                    f"Vigil daily security report - {report.get('date')}", body, report
                ),
                timeout=self.channel_timeout,
            )
        except (ChannelDeliveryError, asyncio.TimeoutError) as e:
            logger.error(f"Daily report sending failed: {e}")
            return False
        logger.info("Daily security report sent successfully")
        return True

    def stats(self) -> dict[str, Any]:
        last = self._stats["last_alert"]
        return {
            **self._stats,
            "deliveries": dict(self._stats["deliveries"]),
            "last_alert": last.isoformat() if last else None,
            "channels": sorted(self._channels),
        }

    async def close(self) -> None:
        for channel in self._channels.values():
            if isinstance(channel, WebhookChannel):
                await channel.close()
