"""
Compliance scoring against weighted policy principles.

check() is a pure function of its input: the same content always yields
the same score, violations and confidences. Recording statistics is a
separate async step so the check itself can run in a worker thread.
"""

import logging
from datetime import date
from typing import Any, Optional

from vigil.detection.rules import MAX_SCAN_CHARS, Principle, load_principles
from vigil.models.event import SecurityEvent
from vigil.models.results import ComplianceResult, Violation
from vigil.models.severity import Severity
from vigil.store.cache import CacheStore
from vigil.utils import serialize_payload, utcnow

logger = logging.getLogger(__name__)

# Confidence contributions per matching pattern
BASE_CONFIDENCE = 0.3
WORD_BOUNDARY_BONUS = 0.2
LONG_MATCH_BONUS = 0.1
LONG_MATCH_LENGTH = 10
ESCALATED_MIN_CONFIDENCE = 0.8
CONTEXT_CHARS = 50

# Exponential moving average factor for the running compliance score
SCORE_ALPHA = 0.1

DAILY_TTL_SECONDS = 2 * 86400


def severity_for_confidence(confidence: float) -> Severity:
    """Map a violation confidence to a severity tier."""
    if confidence > 0.8:
        return Severity.CRITICAL
    if confidence > 0.6:
        return Severity.HIGH
    if confidence > 0.4:
        return Severity.MEDIUM
    return Severity.LOW


class ComplianceScorer:
    """
    Scores content against the principle table.

    Usage:
        scorer = ComplianceScorer(cache)
        result = scorer.check("some text")
        await scorer.record(result)
    """

    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        principles: Optional[list[Principle]] = None,
    ):
        """
        Args:
            cache: Counter store for history; statistics are skipped when None
            principles: Principle table; the bundled table is loaded when None
        """
        self._cache = cache
        self._principles = principles if principles is not None else load_principles()
        self._stats = {
            "checks_performed": 0,
            "violations_detected": 0,
            "compliance_score": 1.0,
            "last_updated": None,
        }

    @property
    def principle_names(self) -> list[str]:
        return [p.name for p in self._principles]

    def _check_principle(self, principle: Principle, content: str) -> Optional[Violation]:
        confidence = 0.0
        matched: list[dict[str, str]] = []
        context: list[str] = []

        for pattern in principle.patterns:
            match = pattern.search(content)
            if not match:
                continue

            matched.append({"pattern": pattern.pattern, "match": match.group(0)})
            start = max(0, match.start() - CONTEXT_CHARS)
            end = min(len(content), match.end() + CONTEXT_CHARS)
            context.append(content[start:end])

            confidence += BASE_CONFIDENCE
            if r"\b" in pattern.pattern:
                confidence += WORD_BOUNDARY_BONUS
            if len(match.group(0)) > LONG_MATCH_LENGTH:
                confidence += LONG_MATCH_BONUS

        if not matched:
            return None

        confidence = min(1.0, confidence)
        severity = severity_for_confidence(confidence)
        if principle.escalated:
            severity = Severity.CRITICAL
            confidence = max(ESCALATED_MIN_CONFIDENCE, confidence)

        return Violation(
            principle=principle.name,
            description=principle.description,
            severity=severity,
            confidence=confidence,
            matched_patterns=matched,
            context=context,
        )

    def check(self, content: Any) -> ComplianceResult:
        """
        Score content against every principle.

        Args:
            content: Text, or any JSON-serializable value

        Returns:
            ComplianceResult with score 1.0 when nothing matched
        """
        text = content if isinstance(content, str) else serialize_payload(content)
        text = text[:MAX_SCAN_CHARS]
        result = ComplianceResult(principles_checked=self.principle_names)

        score = 1.0
        for principle in self._principles:
            violation = self._check_principle(principle, text)
            if violation is None:
                continue
            result.violations.append(violation)
            score -= principle.weight * violation.confidence

        result.compliant = not result.violations
        result.score = max(0.0, min(1.0, score))
        return result

    def check_event(self, event: SecurityEvent) -> ComplianceResult:
        """
        Score an event's payload, user agent, referer and metadata together.
        """
        parts = [
            serialize_payload(event.data),
            event.source.user_agent or "",
            event.source.referer or "",
            serialize_payload(event.metadata) if event.metadata else "",
        ]
        result = self.check(" ".join(p for p in parts if p))
        result.metadata = {
            "event_id": event.id,
            "event_type": event.type,
            "source_ip": event.source_ip,
            "timestamp": event.timestamp,
        }
        return result

    def neutral(self) -> ComplianceResult:
        return ComplianceResult.neutral(self.principle_names)

    async def record(self, result: ComplianceResult) -> None:
        """
        Update running and per-day statistics with a check result.

        Counter failures are logged and never propagate.
        """
        self._stats["checks_performed"] += 1
        self._stats["compliance_score"] = (
            SCORE_ALPHA * result.score + (1 - SCORE_ALPHA) * self._stats["compliance_score"]
        )
        self._stats["last_updated"] = utcnow()
        if not result.compliant:
            self._stats["violations_detected"] += 1
            logger.error(
                f"Policy violation: principles="
                f"{[v.principle for v in result.violations]} score={result.score:.2f}"
            )

        if self._cache is None:
            return

        day = utcnow().date().isoformat()
        try:
            await self._cache.incr("compliance:checks:total")
            key = f"compliance:daily:{day}:checks"
            if await self._cache.incr(key) == 1:
                await self._cache.expire(key, DAILY_TTL_SECONDS)

            if result.compliant:
                return

            key = f"compliance:daily:{day}:violations"
            if await self._cache.incr(key) == 1:
                await self._cache.expire(key, DAILY_TTL_SECONDS)
            for violation in result.violations:
                await self._cache.incr(f"compliance:principle:{violation.principle}:violations")
                key = f"compliance:daily:{day}:principle:{violation.principle}"
                if await self._cache.incr(key) == 1:
                    await self._cache.expire(key, DAILY_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Compliance statistics update failed: {e}")

    async def _principle_history_score(self, principle: str, total_checks: int) -> float:
        if self._cache is None or total_checks <= 0:
            return 1.0
        violations = int(
            await self._cache.get(f"compliance:principle:{principle}:violations") or 0
        )
        return max(0.0, 1.0 - violations / total_checks)

    async def scan(self) -> dict[str, Any]:
        """
        Summarize historical compliance per principle.

        Returns:
            Dict with principle_scores, overall_compliance, risk_level and
            recommendations
        """
        total_checks = 0
        if self._cache is not None:
            total_checks = int(await self._cache.get("compliance:checks:total") or 0)

        principle_scores = {}
        for principle in self._principles:
            principle_scores[principle.name] = await self._principle_history_score(
                principle.name, total_checks
            )

        scores = list(principle_scores.values())
        overall = sum(scores) / len(scores) if scores else 1.0

        risk_level = "low"
        if overall < 0.7:
            risk_level = "high"
        elif overall < 0.85:
            risk_level = "medium"

        recommendations = []
        for principle in self._principles:
            score = principle_scores[principle.name]
            if score < 0.8:
                recommendations.append(
                    {
                        "type": "principle_improvement",
                        "principle": principle.name,
                        "description": f"Strengthen compliance with: {principle.description}",
                        "current_score": score,
                        "target_score": 0.95,
                        "priority": "high" if score < 0.6 else "medium",
                    }
                )
        if overall < 0.8:
            recommendations.append(
                {
                    "type": "overall_improvement",
                    "description": "Overall policy compliance needs improvement",
                    "current_score": overall,
                    "target_score": 0.95,
                    "priority": "high",
                }
            )

        logger.info(f"Compliance scan completed: overall={overall:.3f} risk={risk_level}")
        return {
            "timestamp": utcnow().isoformat(),
            "overall_compliance": overall,
            "principle_scores": principle_scores,
            "risk_level": risk_level,
            "recommendations": recommendations,
            "total_checks": total_checks,
        }

    async def daily_summary(self, day: Optional[date] = None) -> dict[str, Any]:
        """Per-day check and violation counts."""
        day_key = (day or utcnow().date()).isoformat()
        summary: dict[str, Any] = {
            "date": day_key,
            "total_checks": 0,
            "total_violations": 0,
            "principle_violations": {},
            "overall_compliance_score": self._stats["compliance_score"],
        }
        if self._cache is None:
            return summary

        try:
            summary["total_checks"] = int(
                await self._cache.get(f"compliance:daily:{day_key}:checks") or 0
            )
            summary["total_violations"] = int(
                await self._cache.get(f"compliance:daily:{day_key}:violations") or 0
            )
            for name in self.principle_names:
                count = int(
                    await self._cache.get(f"compliance:daily:{day_key}:principle:{name}") or 0
                )
                if count:
                    summary["principle_violations"][name] = count
        except Exception as e:
            logger.warning(f"Daily compliance summary failed: {e}")
        return summary

    def stats(self) -> dict[str, Any]:
        last = self._stats["last_updated"]
        return {
            **self._stats,
            "last_updated": last.isoformat() if last else None,
            "principles_count": len(self._principles),
        }
