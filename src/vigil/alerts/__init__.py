"""
Alert dispatch and delivery channels.
"""

from vigil.alerts.channels import (
    AlertChannel,
    AuditChannel,
    EmailChannel,
    LogChannel,
    WebhookChannel,
    build_channels,
)
from vigil.alerts.dispatcher import (
    DEFAULT_ALERT_CONFIG,
    AlertDispatcher,
    AlertTypeConfig,
    compliance_level,
    cooldown_key,
    recommended_actions,
)

__all__ = [
    "AlertChannel",
    "AlertDispatcher",
    "AlertTypeConfig",
    "AuditChannel",
    "DEFAULT_ALERT_CONFIG",
    "EmailChannel",
    "LogChannel",
    "WebhookChannel",
    "build_channels",
    "compliance_level",
    "cooldown_key",
    "recommended_actions",
]
