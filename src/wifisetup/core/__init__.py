"""Core infrastructure module.

Provides foundational components:
- Configuration management with validation
- Custom exception hierarchy
- Structured logging
- Bounded polling and retry with backoff
- Thread-safe primitives
"""

from .config import Config, ConfigManager, get_config, get_config_manager
from .errors import (
    ProvisioningError,
    ConfigurationError,
    PlatformCommandError,
    ConnectionWaitError,
    NoNetworksConfiguredError,
    ConnectionTimeoutError,
    SettingsError,
    TransitionInProgressError,
    ValidationError,
)
from .logging import setup_logging, get_logger
from .retry import poll, PollConfig, async_retry, RetryConfig
from .threading import LockedValue

__all__ = [
    # Config
    "Config",
    "ConfigManager",
    "get_config",
    "get_config_manager",
    # Errors
    "ProvisioningError",
    "ConfigurationError",
    "PlatformCommandError",
    "ConnectionWaitError",
    "NoNetworksConfiguredError",
    "ConnectionTimeoutError",
    "SettingsError",
    "TransitionInProgressError",
    "ValidationError",
    # Logging
    "setup_logging",
    "get_logger",
    # Retry
    "poll",
    "PollConfig",
    "async_retry",
    "RetryConfig",
    # Threading
    "LockedValue",
]
