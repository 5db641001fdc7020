"""Persistent key/value settings.

A small YAML file holding flags that must survive restarts, such as
whether WiFi setup was skipped.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any

import yaml

from .core.errors import SettingsError

logger = logging.getLogger(__name__)

SKIP_SETTING_KEY = "wifiskip"


class SettingsStore:
    """YAML-file backed settings store.

    Reads raise ``SettingsError`` for absent keys, so callers choose their
    own default. File I/O runs in a worker thread.

    Usage:
        store = SettingsStore("/var/lib/wifi-setup/settings.yaml")
        await store.set_setting("wifiskip", True)
        skipped = await store.get_setting("wifiskip")
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}

        try:
            with open(self._path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise SettingsError("Failed to read settings", details={"path": str(self._path)}, cause=e)

        if not isinstance(data, dict):
            raise SettingsError("Settings file is not a mapping", details={"path": str(self._path)})
        return data

    def _write(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
            temp_path.replace(self._path)
        except (OSError, yaml.YAMLError) as e:
            raise SettingsError("Failed to write settings", details={"path": str(self._path)}, cause=e)

    def _get(self, key: str) -> Any:
        with self._lock:
            data = self._read()
        if key not in data:
            raise SettingsError(f"Setting not found: {key}")
        return data[key]

    def _set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)
        logger.debug("Stored setting %s", key)

    def _delete(self, key: str) -> bool:
        with self._lock:
            data = self._read()
            if key not in data:
                return False
            del data[key]
            self._write(data)
        logger.debug("Deleted setting %s", key)
        return True

    async def get_setting(self, key: str) -> Any:
        """Return the stored value.

        Raises:
            SettingsError: If the key is absent or the file is unreadable
        """
        return await asyncio.to_thread(self._get, key)

    async def set_setting(self, key: str, value: Any) -> None:
        """Store a value, replacing any previous one.

        Raises:
            SettingsError: If the file cannot be written
        """
        await asyncio.to_thread(self._set, key, value)

    async def delete_setting(self, key: str) -> bool:
        """Remove a key. Returns False if it was not set."""
        return await asyncio.to_thread(self._delete, key)
