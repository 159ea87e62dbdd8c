"""
Ordinal severity shared by threats, violations and alerts.
"""

from enum import Enum
from typing import Optional, Union


class Severity(str, Enum):
    """Severity levels, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordinal position used for comparisons."""
        return _RANKS[self]

    @classmethod
    def parse(cls, value: Union[str, "Severity", None], default: "Severity" = None) -> "Severity":
        """Parse a severity string, falling back to ``default`` (medium) when unknown."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MEDIUM

    @classmethod
    def highest(cls, *values: Optional["Severity"]) -> "Severity":
        """Return the maximum severity, ignoring None."""
        present = [v for v in values if v is not None]
        if not present:
            return cls.LOW
        return max(present, key=lambda s: s.rank)


_RANKS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}
