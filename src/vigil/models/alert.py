"""
Alert model.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from vigil.models.severity import Severity
from vigil.utils import utc_isoformat, utcnow


class AlertType(str, enum.Enum):
    """Alert families, each with its own channels and cooldown."""

    THREAT = "threat"
    COMPLIANCE = "compliance"
    SYSTEM = "system"


@dataclass
class Alert:
    """A notification produced from scorer or monitor output."""

    type: AlertType
    level: Severity
    identifier: str
    payload: dict[str, Any] = field(default_factory=dict)
    recommended_actions: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def title(self) -> str:
        return f"[{self.level.value.upper()}] {self.type.value.capitalize()} alert: {self.identifier}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "level": self.level.value,
            "identifier": self.identifier,
            "timestamp": utc_isoformat(self.timestamp),
            "payload": self.payload,
            "recommended_actions": list(self.recommended_actions),
        }
