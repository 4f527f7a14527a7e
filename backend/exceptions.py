"""
Tuya monitor exceptions.

Errors raised by the upstream client, the control surface and the store.
"""


class TuyaMonitorError(Exception):
    """Base exception for the monitor."""
    pass


class UpstreamAuthError(TuyaMonitorError):
    """Raised when the token endpoint fails or returns no token."""
    pass


class UpstreamRequestError(TuyaMonitorError):
    """Raised when a signed call to the Tuya API fails."""
    pass


class ControlError(TuyaMonitorError):
    """Raised when the upstream rejects a switch command."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details


class StatusUnavailable(TuyaMonitorError):
    """Raised when the device status is missing or malformed."""
    pass


class SwitchCodeNotFound(TuyaMonitorError):
    """Raised when a valid status list has no switch_1 entry."""
    pass


class PersistenceError(TuyaMonitorError):
    """Raised when a sample cannot be written to the store."""
    pass
