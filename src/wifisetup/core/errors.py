"""Custom exception hierarchy for the WiFi setup system.

Provides structured error handling with severity levels and context.
"""

from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and logging."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ProvisioningError(Exception):
    """Base exception for all WiFi setup errors.

    Attributes:
        message: Human-readable error message
        details: Additional context as key-value pairs
        severity: Error severity level
    """

    severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "details": self.details,
        }


class ConfigurationError(ProvisioningError):
    """Configuration validation or loading error.

    Raised when:
    - Config file is malformed
    - Values fail validation
    """

    pass


class PlatformCommandError(ProvisioningError):
    """A platform networking command failed.

    Raised when:
    - nmcli exits non-zero or times out
    - Switching wireless mode or DHCP server state reports failure
    """

    pass


class ConnectionWaitError(ProvisioningError):
    """Waiting for a station connection did not succeed."""

    severity = ErrorSeverity.WARNING


class NoNetworksConfiguredError(ConnectionWaitError):
    """No wireless network is configured, so there is nothing to wait for.

    Not retryable.
    """

    def __init__(self, message: str = "No wireless networks configured") -> None:
        super().__init__(message)


class ConnectionTimeoutError(ConnectionWaitError):
    """All polling attempts were used without an association."""

    def __init__(self, attempts: int, message: str = "Timed out waiting for WiFi") -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts


class SettingsError(ProvisioningError):
    """Settings store read or write failure.

    Raised when:
    - A key is absent
    - The settings file cannot be read or written
    """

    severity = ErrorSeverity.WARNING


class TransitionInProgressError(ProvisioningError):
    """Another network transition is already running."""

    severity = ErrorSeverity.WARNING

    def __init__(self, message: str = "A network transition is already in progress") -> None:
        super().__init__(message)


class ValidationError(ProvisioningError):
    """Input validation errors.

    Raised when:
    - SSID is empty or too long
    - Password is too long
    """

    severity = ErrorSeverity.WARNING
