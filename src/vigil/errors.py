"""
Exception hierarchy for the Vigil pipeline.
"""


class VigilError(Exception):
    """Base class for all Vigil errors."""


class EventValidationError(VigilError):
    """Inbound event is malformed and was rejected."""


class RuleConfigError(VigilError):
    """A rule table could not be loaded or compiled."""


class AuditStoreError(VigilError):
    """The document store rejected or timed out on a write."""


class InvalidStatusTransition(VigilError):
    """Violation investigation status cannot move to the requested state."""


class ChannelDeliveryError(VigilError):
    """An alert channel failed to deliver."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ChannelNotConfiguredError(ChannelDeliveryError):
    """An alert channel is listed for a type but has no transport configured."""
