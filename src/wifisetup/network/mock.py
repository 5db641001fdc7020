"""In-memory platform for development and testing.

Simulates a radio that can be in station or access point mode, a DHCP
server, and interface addresses, without touching the host network.
"""

import logging
from typing import Any

from ..core.errors import PlatformCommandError
from .platform import (
    MODE_ACCESS_POINT,
    MODE_STATION,
    InterfaceAddress,
    Platform,
    WirelessMode,
    WirelessNetwork,
    WirelessStatus,
)

logger = logging.getLogger(__name__)


class MockPlatform(Platform):
    """Simulated platform.

    Every mutating call is appended to ``calls`` as a tuple, so tests can
    assert ordering, e.g. that the AP is stopped before joining a network.

    Joining a network listed in ``reachable`` associates immediately and
    assigns ``station_address``. Any other network stays unassociated.
    """

    def __init__(
        self,
        networks: list[WirelessNetwork] | None = None,
        configured: list[str] | None = None,
        reachable: set[str] | None = None,
        mac_address: str | None = "b8:27:eb:12:9e:28",
        hostname: str = "wifi-setup",
        lan_address: str | None = None,
        station_address: str = "192.168.1.50",
        wifi_interface: str = "wlan0",
    ) -> None:
        self.networks = list(networks or [])
        self.configured = list(configured or [])
        self.reachable = set(reachable or ())
        self.mac_address = mac_address
        self.hostname = hostname
        self.lan_address = lan_address
        self.station_address = station_address
        self.wifi_interface = wifi_interface

        self.enabled = True
        self.mode = "none"
        self.dhcp_enabled = False
        self.ap_ssid: str | None = None
        self.wifi_addresses: list[InterfaceAddress] = []

        # Injected failures
        self.fail_modes: set[tuple[bool, str]] = set()
        self.fail_dhcp = False
        self.fail_queries: set[str] = set()

        self.calls: list[tuple[Any, ...]] = []

    def associate(self, ssid: str, address: str | None = None) -> None:
        """Put the radio into a connected station state."""
        if ssid not in self.configured:
            self.configured.append(ssid)
        self.enabled = True
        self.mode = MODE_STATION
        self.wifi_addresses = [InterfaceAddress.parse(address or self.station_address)]

    async def scan_wireless_networks(self) -> list[WirelessNetwork]:
        self.calls.append(("scan",))
        return list(self.networks)

    def _query(self, name: str) -> None:
        if name in self.fail_queries:
            raise PlatformCommandError(f"{name} failed", details={"query": name})

    async def get_wireless_mode(self) -> WirelessStatus:
        self._query("get_wireless_mode")
        return WirelessStatus(
            enabled=self.enabled,
            mode=self.mode,
            options={"networks": list(self.configured)},
        )

    async def set_wireless_mode(
        self,
        enabled: bool,
        mode: WirelessMode = MODE_STATION,
        options: dict[str, Any] | None = None,
    ) -> bool:
        options = dict(options or {})
        self.calls.append(("set_wireless_mode", enabled, mode, options))

        if (enabled, mode) in self.fail_modes:
            logger.debug("MockPlatform: injected failure for %s/%s", enabled, mode)
            return False

        if mode == MODE_ACCESS_POINT:
            if enabled:
                self.mode = MODE_ACCESS_POINT
                self.ap_ssid = options.get("ssid")
                self.wifi_addresses = [InterfaceAddress.parse(options.get("ipaddr", "192.168.4.1"))]
            else:
                if self.mode == MODE_ACCESS_POINT:
                    self.mode = "none"
                    self.wifi_addresses = []
                self.ap_ssid = None
        elif mode == MODE_STATION:
            if enabled:
                ssid = options["ssid"]
                if ssid not in self.configured:
                    self.configured.append(ssid)
                if ssid in self.reachable:
                    self.associate(ssid)
                else:
                    self.mode = MODE_STATION
                    self.wifi_addresses = []
            else:
                self.mode = "none"
                self.wifi_addresses = []

        logger.debug("MockPlatform: mode=%s", self.mode)
        return True

    async def get_dhcp_server_status(self) -> bool:
        self._query("get_dhcp_server_status")
        return self.dhcp_enabled

    async def set_dhcp_server_status(self, enabled: bool) -> bool:
        self.calls.append(("set_dhcp_server_status", enabled))
        if self.fail_dhcp:
            return False
        self.dhcp_enabled = enabled
        return True

    async def get_network_addresses(self) -> dict[str, str]:
        addresses: dict[str, str] = {}
        if self.lan_address:
            addresses["lan"] = self.lan_address
        for addr in self.wifi_addresses:
            if addr.is_usable_ipv4 and self.mode == MODE_STATION:
                addresses["wlan"] = addr.address
                break
        return addresses

    async def get_interface_addresses(self, iface: str) -> list[InterfaceAddress]:
        if iface == self.wifi_interface:
            return list(self.wifi_addresses)
        return []

    async def get_mac_address(self, iface: str) -> str | None:
        return self.mac_address

    async def get_hostname(self) -> str:
        return self.hostname
