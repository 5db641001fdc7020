import asyncio
from pathlib import Path

import pytest

from wifisetup.core.config import NetworkConfig, TimingConfig
from wifisetup.core.errors import (
    ConnectionTimeoutError,
    NoNetworksConfiguredError,
    PlatformCommandError,
    TransitionInProgressError,
    ValidationError,
)
from wifisetup.network.manager import ConnectionSignal, ProvisioningState
from wifisetup.network.mock import MockPlatform
from wifisetup.network.platform import InterfaceAddress, WirelessNetwork
from wifisetup.settings import SKIP_SETTING_KEY, SettingsStore

STOP_AP_CALLS = [
    ("set_wireless_mode", False, "ap", {}),
    ("set_dhcp_server_status", False),
]


def _start_ap(platform: MockPlatform) -> None:
    platform.mode = "ap"
    platform.dhcp_enabled = True


def _first_index(calls: list[tuple], predicate) -> int:
    return next(i for i, call in enumerate(calls) if predicate(call))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def test_skipped_setup_resolves_true_without_waiting(make_manager, platform, settings, sleep, monkeypatch) -> None:
    asyncio.run(settings.set_setting(SKIP_SETTING_KEY, True))
    manager = make_manager()

    async def fail_wait(*args, **kwargs):
        raise AssertionError("wait_for_wifi must not run when setup was skipped")

    monkeypatch.setattr(manager, "wait_for_wifi", fail_wait)

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert manager.state is ProvisioningState.SKIPPED
    assert manager.connected.is_set
    assert ("scan",) not in platform.calls
    assert sleep.delays == []


def test_skipped_setup_stops_leftover_access_point(make_manager, platform, settings) -> None:
    asyncio.run(settings.set_setting(SKIP_SETTING_KEY, True))
    _start_ap(platform)

    assert asyncio.run(make_manager().is_connectivity_configured()) is True
    assert platform.calls == STOP_AP_CALLS


def test_wired_connection_stops_running_access_point(make_manager, platform) -> None:
    platform.lan_address = "10.0.0.12"
    _start_ap(platform)
    manager = make_manager()

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert platform.calls == STOP_AP_CALLS
    assert platform.mode == "none"
    assert platform.dhcp_enabled is False
    assert manager.state is ProvisioningState.CONNECTED


def test_wired_connection_without_access_point_issues_no_stop(make_manager, platform) -> None:
    platform.lan_address = "10.0.0.12"

    assert asyncio.run(make_manager().is_connectivity_configured()) is True
    assert platform.calls == []


def test_preprovisioned_marker_counts_as_connected(make_manager, platform, tmp_path: Path) -> None:
    marker = tmp_path / "preprovisioned.txt"
    marker.write_text("")
    manager = make_manager(network=NetworkConfig(preprovisioned_marker=str(marker)))

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert platform.calls == []


def test_missing_marker_file_is_ignored(make_manager, platform, tmp_path: Path) -> None:
    manager = make_manager(network=NetworkConfig(preprovisioned_marker=str(tmp_path / "absent")))

    assert asyncio.run(manager.is_connectivity_configured()) is False


def test_unreadable_skip_flag_fails_open(make_manager, platform, tmp_path: Path, sleep) -> None:
    broken = tmp_path / "settings.yaml"
    broken.write_text("[unterminated")
    manager = make_manager(settings=SettingsStore(broken))

    assert asyncio.run(manager.is_connectivity_configured()) is False
    assert platform.calls == [
        ("set_wireless_mode", True, "ap", {"ssid": "WiFi Setup 9E28", "ipaddr": "192.168.4.1"}),
        ("set_dhcp_server_status", True),
    ]
    assert sleep.delays == []


def test_no_connection_starts_access_point(make_manager, platform, sleep) -> None:
    platform.configured = ["Home"]
    manager = make_manager(timing=TimingConfig(wait_attempts=3, wait_interval=1.5))

    assert asyncio.run(manager.is_connectivity_configured()) is False
    assert manager.state is ProvisioningState.AP_ACTIVE
    assert not manager.connected.is_set
    assert platform.mode == "ap"
    assert platform.dhcp_enabled is True
    assert sleep.delays == [1.5, 1.5]


def test_access_point_start_failure_is_not_escalated(make_manager, platform) -> None:
    platform.fail_modes = {(True, "ap")}
    manager = make_manager()

    assert asyncio.run(manager.is_connectivity_configured()) is False
    assert manager.state is ProvisioningState.FAILED
    # DHCP is not started when the AP did not come up
    assert ("set_dhcp_server_status", True) not in platform.calls


def test_existing_wifi_connection_is_verified(make_manager, platform) -> None:
    platform.associate("Home")
    platform.dhcp_enabled = True
    manager = make_manager()

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert manager.connected.is_set
    assert platform.calls == STOP_AP_CALLS


def test_unreadable_access_point_state_still_resolves(make_manager, platform) -> None:
    platform.associate("Home")
    platform.fail_queries = {"get_dhcp_server_status"}
    manager = make_manager()

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert manager.state is ProvisioningState.CONNECTED
    assert manager.connected.is_set
    # State unknown, so the stop is issued
    assert platform.calls == STOP_AP_CALLS


def test_wired_connection_survives_failing_mode_query(make_manager, platform) -> None:
    platform.lan_address = "10.0.0.12"
    platform.fail_queries = {"get_wireless_mode"}
    manager = make_manager()

    assert asyncio.run(manager.is_connectivity_configured()) is True
    assert manager.state is ProvisioningState.CONNECTED
    assert platform.calls == STOP_AP_CALLS


def test_connection_signal_fires_once_across_reconciliations(make_manager, platform) -> None:
    platform.lan_address = "10.0.0.12"
    manager = make_manager()
    fired: list[int] = []
    manager.connected.subscribe(lambda: fired.append(1))

    async def scenario() -> None:
        assert await manager.is_connectivity_configured()
        assert await manager.is_connectivity_configured()

    asyncio.run(scenario())

    assert fired == [1]


# ---------------------------------------------------------------------------
# Waiting for WiFi
# ---------------------------------------------------------------------------


def test_wait_fails_fast_without_configured_networks(make_manager, sleep) -> None:
    manager = make_manager()

    with pytest.raises(NoNetworksConfiguredError):
        asyncio.run(manager.wait_for_wifi(20, 3.0))

    assert sleep.delays == []


def test_wait_returns_immediately_when_already_connected(make_manager, platform, sleep) -> None:
    platform.associate("Home")

    assert asyncio.run(make_manager().wait_for_wifi(20, 3.0)) == 1
    assert sleep.delays == []


def test_wait_resolves_when_association_completes(make_manager, platform, sleep) -> None:
    platform.configured = ["Home"]

    def associate_after_two_sleeps(count: int) -> None:
        if count == 2:
            platform.associate("Home")

    sleep.on_sleep = associate_after_two_sleeps

    assert asyncio.run(make_manager().wait_for_wifi(20, 3.0)) == 3
    assert sleep.delays == [3.0, 3.0]


def test_wait_gives_up_after_max_attempts(make_manager, platform, sleep) -> None:
    platform.configured = ["Home"]

    with pytest.raises(ConnectionTimeoutError) as exc_info:
        asyncio.run(make_manager().wait_for_wifi(4, 0.5))

    assert exc_info.value.attempts == 4
    assert sleep.delays == [0.5, 0.5, 0.5]


def test_station_mode_without_address_keeps_waiting(make_manager, platform, sleep) -> None:
    platform.configured = ["Home"]
    platform.mode = "sta"

    with pytest.raises(ConnectionTimeoutError):
        asyncio.run(make_manager().wait_for_wifi(3, 1.0))

    assert len(sleep.delays) == 2


def test_loopback_address_is_not_a_connection(make_manager, platform) -> None:
    platform.configured = ["Home"]
    platform.mode = "sta"
    platform.wifi_addresses = [InterfaceAddress.parse("127.0.0.1/8")]

    with pytest.raises(ConnectionTimeoutError):
        asyncio.run(make_manager().wait_for_wifi(2, 1.0))


def test_ipv6_address_alone_is_not_a_connection(make_manager, platform) -> None:
    platform.configured = ["Home"]
    platform.mode = "sta"
    platform.wifi_addresses = [InterfaceAddress.parse("fe80::1/64")]

    with pytest.raises(ConnectionTimeoutError):
        asyncio.run(make_manager().wait_for_wifi(2, 1.0))


def test_disabled_radio_is_not_station_mode(make_manager, platform) -> None:
    platform.associate("Home")
    platform.enabled = False

    with pytest.raises(ConnectionTimeoutError):
        asyncio.run(make_manager().wait_for_wifi(2, 1.0))


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class ScriptedScanPlatform(MockPlatform):
    def __init__(self, results: list[list[WirelessNetwork]]) -> None:
        super().__init__()
        self.results = results
        self.scan_count = 0

    async def scan_wireless_networks(self) -> list[WirelessNetwork]:
        self.scan_count += 1
        if self.results:
            return self.results.pop(0)
        return []


def test_scan_retries_until_results_appear(make_manager, sleep) -> None:
    found = [WirelessNetwork(ssid="Home", quality=70, encryption=True)]
    scripted = ScriptedScanPlatform([[], [], [], [], found])

    assert asyncio.run(make_manager(platform=scripted).scan()) == found
    assert scripted.scan_count == 5
    assert sleep.delays == [3.0, 3.0, 3.0, 3.0]


def test_scan_returns_empty_list_after_five_attempts(make_manager, sleep) -> None:
    scripted = ScriptedScanPlatform([])

    assert asyncio.run(make_manager(platform=scripted).scan()) == []
    assert scripted.scan_count == 5
    assert len(sleep.delays) == 4


def test_scan_never_raises(make_manager) -> None:
    class BrokenScanPlatform(MockPlatform):
        async def scan_wireless_networks(self) -> list[WirelessNetwork]:
            raise PlatformCommandError("nmcli failed: radio busy")

    assert asyncio.run(make_manager(platform=BrokenScanPlatform()).scan()) == []


# ---------------------------------------------------------------------------
# Applying credentials
# ---------------------------------------------------------------------------


def test_credentials_stop_access_point_before_joining(make_manager, platform, sleep) -> None:
    platform.reachable = {"Home"}
    manager = make_manager()

    assert asyncio.run(manager.apply_credentials("Home", "secret")) is True

    stop_index = _first_index(platform.calls, lambda c: c[:3] == ("set_wireless_mode", False, "ap"))
    join_index = _first_index(platform.calls, lambda c: c[:3] == ("set_wireless_mode", True, "sta"))
    assert stop_index < join_index
    assert platform.calls[join_index][3] == {"ssid": "Home", "key": "secret"}
    assert sleep.delays == [2.0, 5.0]
    assert manager.connected.is_set
    assert manager.state is ProvisioningState.CONNECTED


def test_credentials_stop_access_point_even_when_not_running(make_manager, platform) -> None:
    platform.reachable = {"Home"}

    asyncio.run(make_manager().apply_credentials("Home"))

    assert platform.calls[:2] == STOP_AP_CALLS


def test_credentials_are_trimmed(make_manager, platform) -> None:
    platform.reachable = {"Cafe"}

    asyncio.run(make_manager().apply_credentials("  Cafe \n", "   "))

    join = next(c for c in platform.calls if c[:3] == ("set_wireless_mode", True, "sta"))
    assert join[3] == {"ssid": "Cafe", "key": None}


def test_define_network_failure_aborts_without_waiting(make_manager, platform, sleep) -> None:
    platform.fail_modes = {(True, "sta")}
    manager = make_manager()

    with pytest.raises(PlatformCommandError):
        asyncio.run(manager.apply_credentials("Home", "secret"))

    assert sleep.delays == [2.0, 5.0]
    assert manager.state is ProvisioningState.FAILED
    assert not manager.connected.is_set


class RadioLostAfterJoin(MockPlatform):
    """Stops answering mode queries once a station profile is applied."""

    async def set_wireless_mode(self, enabled, mode="sta", options=None):
        ok = await super().set_wireless_mode(enabled, mode, options)
        if enabled and mode == "sta":
            self.fail_queries.add("get_wireless_mode")
        return ok


def test_query_failure_while_waiting_marks_failed(make_manager) -> None:
    platform = RadioLostAfterJoin(reachable={"Home"})
    manager = make_manager(platform=platform)

    with pytest.raises(PlatformCommandError):
        asyncio.run(manager.apply_credentials("Home", "secret"))

    assert manager.state is ProvisioningState.FAILED
    assert not manager.in_transition
    assert not manager.connected.is_set


def test_unreachable_network_is_not_retried(make_manager, platform, sleep) -> None:
    manager = make_manager(timing=TimingConfig(wait_attempts=3, wait_interval=1.0))

    assert asyncio.run(manager.apply_credentials("Elsewhere", "secret")) is False

    joins = [c for c in platform.calls if c[:3] == ("set_wireless_mode", True, "sta")]
    assert len(joins) == 1
    assert sleep.delays == [2.0, 5.0, 1.0, 1.0]
    assert manager.state is ProvisioningState.FAILED
    assert not manager.connected.is_set


@pytest.mark.parametrize(
    ("ssid", "password"),
    [("", "secret"), ("   ", None), ("x" * 33, None), ("Home", "p" * 64)],
)
def test_invalid_credentials_are_rejected(make_manager, platform, ssid, password) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(make_manager().apply_credentials(ssid, password))

    assert platform.calls == []


def test_overlapping_transition_is_rejected(make_manager, platform, settings) -> None:
    platform.reachable = {"Home"}
    rejected: list[Exception] = []

    async def scenario() -> None:
        manager = None

        async def sleep(delay: float) -> None:
            if not rejected:
                try:
                    await manager.apply_credentials("Other", "secret")
                except TransitionInProgressError as e:
                    rejected.append(e)

        manager = make_manager(sleep=sleep)
        assert await manager.apply_credentials("Home", "secret") is True

    asyncio.run(scenario())

    assert len(rejected) == 1
    joins = [c for c in platform.calls if c[:3] == ("set_wireless_mode", True, "sta")]
    assert [c[3]["ssid"] for c in joins] == ["Home"]


# ---------------------------------------------------------------------------
# Skip setup
# ---------------------------------------------------------------------------


def test_skip_setup_persists_flag_and_stops_access_point(make_manager, platform, settings) -> None:
    _start_ap(platform)
    manager = make_manager()

    asyncio.run(manager.skip_setup())

    assert asyncio.run(settings.get_setting(SKIP_SETTING_KEY)) is True
    assert platform.calls == STOP_AP_CALLS
    assert manager.connected.is_set
    assert manager.state is ProvisioningState.SKIPPED


def test_skip_setup_survives_settings_write_failure(make_manager, platform, tmp_path: Path) -> None:
    # A directory cannot be opened as the settings file
    manager = make_manager(settings=SettingsStore(tmp_path))

    asyncio.run(manager.skip_setup())

    assert platform.calls == STOP_AP_CALLS
    assert manager.connected.is_set


# ---------------------------------------------------------------------------
# Hotspot SSID and completion signal
# ---------------------------------------------------------------------------


def test_hotspot_ssid_uses_last_two_mac_octets(make_manager) -> None:
    platform = MockPlatform(mac_address="aa:bb:cc:dd:ee:ff")
    manager = make_manager(platform=platform, network=NetworkConfig(ap_ssid_base="Gateway"))

    assert asyncio.run(manager.hotspot_ssid()) == "Gateway EEFF"


def test_hotspot_ssid_without_mac_is_base_name(make_manager) -> None:
    platform = MockPlatform(mac_address=None)
    manager = make_manager(platform=platform, network=NetworkConfig(ap_ssid_base="Gateway"))

    assert asyncio.run(manager.hotspot_ssid()) == "Gateway"


def test_connection_signal_is_single_fire() -> None:
    signal = ConnectionSignal()
    calls: list[str] = []
    signal.subscribe(lambda: calls.append("early"))

    assert signal.fire() is True
    assert signal.fire() is False

    signal.subscribe(lambda: calls.append("late"))
    assert calls == ["early", "late"]


def test_connection_signal_callback_errors_are_contained() -> None:
    signal = ConnectionSignal()
    calls: list[str] = []

    def broken() -> None:
        raise RuntimeError("boom")

    signal.subscribe(broken)
    signal.subscribe(lambda: calls.append("ok"))

    assert signal.fire() is True
    assert calls == ["ok"]


def test_connection_signal_wakes_waiters() -> None:
    async def scenario() -> bool:
        signal = ConnectionSignal()
        waiter = asyncio.create_task(signal.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        signal.fire()
        await asyncio.wait_for(waiter, timeout=1.0)
        return signal.is_set

    assert asyncio.run(scenario()) is True
