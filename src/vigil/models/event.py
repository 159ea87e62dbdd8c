"""
Inbound security event schema.

Events are validated once at the pipeline boundary and are immutable
afterwards.
"""

import ipaddress
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vigil.errors import EventValidationError
from vigil.models.severity import Severity
from vigil.utils import parse_iso8601


class EventType(str, Enum):
    """Known event types. Unknown types are accepted and scored as medium."""

    REQUEST = "request"
    THREAT_DETECTED = "threat_detected"
    POLICY_VIOLATION = "policy_violation"
    AUTHENTICATION_FAILURE = "authentication_failure"
    LOGIN_SUCCESS = "login_success"
    SYSTEM_ERROR = "system_error"
    SECURITY_SCAN = "security_scan"
    DATA_ACCESS = "data_access"
    ADMIN_ACTION = "admin_action"
    DAILY_REPORT = "daily_report"
    SECURITY_EVENT = "security_event"


# Base audit severity per event type
EVENT_TYPE_SEVERITY = {
    EventType.THREAT_DETECTED.value: Severity.HIGH,
    EventType.POLICY_VIOLATION.value: Severity.CRITICAL,
    EventType.AUTHENTICATION_FAILURE.value: Severity.MEDIUM,
    EventType.SYSTEM_ERROR.value: Severity.MEDIUM,
    EventType.SECURITY_SCAN.value: Severity.LOW,
    EventType.LOGIN_SUCCESS.value: Severity.LOW,
    EventType.DATA_ACCESS.value: Severity.MEDIUM,
    EventType.ADMIN_ACTION.value: Severity.HIGH,
    EventType.DAILY_REPORT.value: Severity.LOW,
    EventType.REQUEST.value: Severity.LOW,
    EventType.SECURITY_EVENT.value: Severity.LOW,
}


# Matches the user_id column width in the audit tables
MAX_ID_LENGTH = 255


class EventSource(BaseModel):
    """Origin of an event. Accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    ip: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    referer: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=MAX_ID_LENGTH)
    session_id: Optional[str] = Field(
        default=None, alias="sessionId", max_length=MAX_ID_LENGTH
    )

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        """Source IP must be a syntactically valid IPv4/IPv6 address when present."""
        if v is None or v == "":
            return None
        try:
            ipaddress.ip_address(v.strip())
        except ValueError as e:
            raise ValueError(f"Invalid IP address: {v!r}") from e
        return v.strip()


class SecurityEvent(BaseModel):
    """A security-relevant event submitted to the pipeline."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: str
    type: str = Field(min_length=1)
    source: EventSource
    data: Any
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: str) -> str:
        """Timestamp must be ISO-8601."""
        try:
            parse_iso8601(v)
        except ValueError as e:
            raise ValueError(f"Timestamp is not ISO-8601: {v!r}") from e
        return v

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: Any) -> Any:
        """Event payload is required and non-empty."""
        if v is None or v == "" or v == {} or v == []:
            raise ValueError("data is required")
        return v

    @property
    def occurred_at(self) -> datetime:
        """Event timestamp as an aware UTC datetime."""
        return parse_iso8601(self.timestamp)

    @property
    def source_ip(self) -> Optional[str]:
        return self.source.ip

    @property
    def base_severity(self) -> Severity:
        """Audit severity implied by the event type alone."""
        return EVENT_TYPE_SEVERITY.get(self.type, Severity.MEDIUM)

    @classmethod
    def from_payload(cls, payload: Any) -> "SecurityEvent":
        """
        Validate a raw payload.

        Args:
            payload: Decoded JSON body of an ingestion request

        Returns:
            Validated SecurityEvent

        Raises:
            EventValidationError: If required fields are missing or malformed
        """
        if not isinstance(payload, dict):
            raise EventValidationError("Event payload must be an object")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(p) for p in err["loc"]) or "event" for err in e.errors()
            )
            raise EventValidationError(f"Invalid event ({fields})") from e

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible representation."""
        return self.model_dump(mode="json", by_alias=True)
