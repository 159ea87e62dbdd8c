"""
Loading of the threat and compliance rule tables.

Rule tables are YAML data files shipped with the package and can be
replaced by pointing THREAT_RULES_PATH / COMPLIANCE_RULES_PATH at another
file. Every pattern is compiled at load time so a bad rule fails startup
instead of the first event that reaches it.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from vigil.errors import RuleConfigError
from vigil.models.severity import Severity

logger = logging.getLogger(__name__)

RULES_DIR = Path(__file__).parent / "data"
DEFAULT_THREAT_RULES = RULES_DIR / "threat_patterns.yaml"
DEFAULT_PRINCIPLES = RULES_DIR / "principles.yaml"

# Patterns only see this many leading characters of a payload
MAX_SCAN_CHARS = 64 * 1024


@dataclass
class ThreatCategory:
    """A tagged group of payload patterns with a fixed severity."""

    name: str
    severity: Severity
    patterns: list[re.Pattern] = field(default_factory=list)


@dataclass
class ThreatRules:
    categories: list[ThreatCategory]
    policy_checks: dict[str, re.Pattern]
    admin_endpoint: re.Pattern
    vpn_org: re.Pattern
    bot_signatures: list[re.Pattern]
    minimum_browser_versions: dict[str, int]


@dataclass
class Principle:
    """A weighted compliance principle."""

    name: str
    description: str
    weight: float
    patterns: list[re.Pattern]
    escalated: bool = False


def _compile(pattern: Any, where: str) -> re.Pattern:
    if not isinstance(pattern, str) or not pattern:
        raise RuleConfigError(f"{where}: pattern must be a non-empty string")
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise RuleConfigError(f"{where}: invalid pattern {pattern!r}: {e}") from e


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise RuleConfigError(f"Cannot read rule file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise RuleConfigError(f"Malformed rule file {path}: {e}") from e
    if not isinstance(data, dict):
        raise RuleConfigError(f"Rule file {path} must contain a mapping")
    return data


def load_threat_rules(path: Optional[Path] = None) -> ThreatRules:
    """
    Load and compile the threat rule table.

    Args:
        path: Rule file; the bundled table is used when None

    Raises:
        RuleConfigError: If the file is missing, malformed or has a bad pattern
    """
    path = Path(path) if path else DEFAULT_THREAT_RULES
    data = _read_yaml(path)

    categories = []
    for name, definition in (data.get("categories") or {}).items():
        if not isinstance(definition, dict) or "severity" not in definition:
            raise RuleConfigError(f"{path}: category {name} needs a severity")
        try:
            severity = Severity(str(definition["severity"]).lower())
        except ValueError as e:
            raise RuleConfigError(f"{path}: category {name} has unknown severity") from e
        patterns = [
            _compile(p, f"{path}:{name}") for p in definition.get("patterns") or []
        ]
        categories.append(ThreatCategory(name=name, severity=severity, patterns=patterns))

    if not categories:
        raise RuleConfigError(f"{path}: no threat categories defined")

    rules = ThreatRules(
        categories=categories,
        policy_checks={
            name: _compile(p, f"{path}:policy_checks.{name}")
            for name, p in (data.get("policy_checks") or {}).items()
        },
        admin_endpoint=_compile(data.get("admin_endpoint"), f"{path}:admin_endpoint"),
        vpn_org=_compile(data.get("vpn_org"), f"{path}:vpn_org"),
        bot_signatures=[
            _compile(p, f"{path}:bot_signatures") for p in data.get("bot_signatures") or []
        ],
        minimum_browser_versions={
            str(k): int(v) for k, v in (data.get("minimum_browser_versions") or {}).items()
        },
    )
    logger.info(f"Loaded {len(categories)} threat categories from {path.name}")
    return rules


def load_principles(path: Optional[Path] = None) -> list[Principle]:
    """
    Load and compile the compliance principle table.

    Raises:
        RuleConfigError: If a principle lacks patterns or has a weight outside (0, 1]
    """
    path = Path(path) if path else DEFAULT_PRINCIPLES
    data = _read_yaml(path)

    principles = []
    for name, definition in (data.get("principles") or {}).items():
        if not isinstance(definition, dict):
            raise RuleConfigError(f"{path}: principle {name} must be a mapping")
        weight = float(definition.get("weight", 0))
        if not 0 < weight <= 1:
            raise RuleConfigError(f"{path}: principle {name} weight must be in (0, 1]")
        patterns = [_compile(p, f"{path}:{name}") for p in definition.get("patterns") or []]
        if not patterns:
            raise RuleConfigError(f"{path}: principle {name} has no patterns")
        principles.append(
            Principle(
                name=name,
                description=str(definition.get("description", name)),
                weight=weight,
                patterns=patterns,
                escalated=bool(definition.get("escalated", False)),
            )
        )

    if not principles:
        raise RuleConfigError(f"{path}: no principles defined")

    logger.info(f"Loaded {len(principles)} compliance principles from {path.name}")
    return principles
