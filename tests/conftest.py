from pathlib import Path
from typing import Callable

import pytest

from wifisetup.core.config import NetworkConfig, TimingConfig
from wifisetup.network.manager import ConnectivityManager
from wifisetup.network.mock import MockPlatform
from wifisetup.settings import SettingsStore


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self, on_sleep: Callable[[int], None] | None = None) -> None:
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))


@pytest.fixture
def platform() -> MockPlatform:
    return MockPlatform()


@pytest.fixture
def settings(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.yaml")


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_manager(
    platform: MockPlatform, settings: SettingsStore, sleep: RecordingSleep
) -> Callable[..., ConnectivityManager]:
    def factory(**overrides) -> ConnectivityManager:
        kwargs = {
            "platform": platform,
            "settings": settings,
            "network": NetworkConfig(),
            "timing": TimingConfig(),
            "sleep": sleep,
        }
        kwargs.update(overrides)
        return ConnectivityManager(**kwargs)

    return factory
