"""Configuration management with Pydantic validation.

Provides type-safe configuration with:
- Pydantic models for validation
- YAML file persistence
- Thread-safe updates
- Defaults matching the stock setup timings
"""

import ipaddress
import logging
import re
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/wifi-setup/config.yaml")


# =============================================================================
# Configuration Models
# =============================================================================


class NetworkConfig(BaseModel):
    """Access point and interface configuration."""

    # Leaves room for " XXXX" within the 32 character SSID limit
    ap_ssid_base: str = Field(
        "WiFi Setup",
        min_length=1,
        max_length=27,
        description="Hotspot SSID base name",
    )
    ap_ip: str = Field("192.168.4.1", description="AP IP address")
    wifi_interface: str = Field("wlan0", description="Wireless interface")
    lan_interface: str = Field("eth0", description="Wired interface")
    preprovisioned_marker: str | None = Field(
        None, description="Marker file exempting the device from setup"
    )

    @field_validator("ap_ssid_base")
    @classmethod
    def validate_ssid_base(cls, v: str) -> str:
        """Validate SSID base contains safe characters."""
        if not re.match(r"^[\w\s\-\.]+$", v):
            raise ValueError("SSID contains invalid characters")
        return v

    @field_validator("ap_ip")
    @classmethod
    def validate_ap_ip(cls, v: str) -> str:
        """Validate AP address is a plain IPv4 address."""
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"Invalid AP IPv4 address: {v}") from e
        return v


class TimingConfig(BaseModel):
    """Retry budgets and settle delays (seconds)."""

    wait_attempts: int = Field(20, ge=1, description="Connection poll attempts")
    wait_interval: float = Field(3.0, gt=0, description="Seconds between connection polls")
    scan_attempts: int = Field(5, ge=1, description="Scan attempts")
    scan_interval: float = Field(3.0, gt=0, description="Seconds between scans")
    response_flush_delay: float = Field(
        2.0, ge=0, description="Delay before tearing down the AP"
    )
    ap_settle_delay: float = Field(
        5.0, ge=0, description="Delay after AP teardown before joining"
    )


class SettingsConfig(BaseModel):
    """Persistent settings store location."""

    path: str = Field("/var/lib/wifi-setup/settings.yaml", description="Settings file")


class PortalConfig(BaseModel):
    """Captive portal web server configuration."""

    enabled: bool = Field(True, description="Serve the captive portal")
    host: str = Field("0.0.0.0", description="Server bind address")
    port: int = Field(80, ge=1, le=65535, description="Portal web server port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Log level")
    format: str = Field("simple", description="Format: simple, structured")
    file: str | None = Field(None, description="Log file path")
    max_size_mb: int = Field(10, ge=1, description="Max log file size")
    backup_count: int = Field(3, ge=0, description="Number of backup files")


class Config(BaseModel):
    """Root configuration model."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Manager
# =============================================================================


class ConfigManager:
    """Thread-safe configuration manager with file persistence.

    Provides:
    - Pydantic validation on load/save
    - Thread-safe read/write operations
    - Automatic persistence to YAML

    Usage:
        config_manager = ConfigManager("/path/to/config.yaml")
        config = config_manager.get()
        config_manager.update(network={"ap_ssid_base": "Gateway"})
    """

    _instance: "ConfigManager | None" = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, config_path: str | Path) -> None:
        self._config_path = Path(config_path)
        self._config: Config
        self._lock = threading.RLock()
        self._load()

    @classmethod
    def get_instance(cls, config_path: str | Path | None = None) -> "ConfigManager":
        """Get singleton instance.

        Args:
            config_path: Path to config file (only used on first call)

        Returns:
            ConfigManager singleton instance
        """
        with cls._instance_lock:
            if cls._instance is None:
                if config_path is None:
                    config_path = DEFAULT_CONFIG_PATH
                cls._instance = cls(config_path)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (for testing)."""
        with cls._instance_lock:
            cls._instance = None

    @property
    def path(self) -> Path:
        return self._config_path

    def _load(self) -> None:
        """Load and validate configuration from file."""
        if self._config_path.exists():
            try:
                with open(self._config_path) as f:
                    data = yaml.safe_load(f) or {}
                self._config = Config.model_validate(data)
                logger.info("Loaded config from %s", self._config_path)
            except Exception as e:
                logger.warning("Failed to load config, using defaults: %s", e)
                self._config = Config()
        else:
            logger.info("Config file not found, using defaults")
            self._config = Config()
            try:
                self._save()
            except OSError as e:
                # Read-only root filesystems still boot with defaults
                logger.warning("Could not write default config: %s", e)

    def _save(self) -> None:
        """Persist configuration to file."""
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)

            data = self._config.model_dump(mode="json")

            # Write atomically via temp file
            temp_path = self._config_path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            temp_path.replace(self._config_path)

            logger.debug("Saved config to %s", self._config_path)
        except Exception as e:
            logger.error("Failed to save config: %s", e)
            raise

    def get(self) -> Config:
        """Get current configuration (thread-safe copy).

        Returns:
            Deep copy of current configuration
        """
        with self._lock:
            return self._config.model_copy(deep=True)

    def update(self, **kwargs: Any) -> None:
        """Update top-level config sections.

        Args:
            **kwargs: Section names and their new values

        Raises:
            ConfigurationError: If the result fails validation
        """
        with self._lock:
            data = self._config.model_dump()
            for key, value in kwargs.items():
                if key in data and isinstance(value, dict):
                    data[key].update(value)
                else:
                    data[key] = value
            try:
                self._config = Config.model_validate(data)
            except PydanticValidationError as e:
                raise ConfigurationError("Invalid configuration update", cause=e) from e
            self._save()


# =============================================================================
# Convenience Functions
# =============================================================================


def get_config() -> Config:
    """Get current configuration from singleton manager.

    Returns:
        Current configuration
    """
    return ConfigManager.get_instance().get()


def get_config_manager() -> ConfigManager:
    """Get the singleton ConfigManager instance.

    Returns:
        ConfigManager instance
    """
    return ConfigManager.get_instance()
