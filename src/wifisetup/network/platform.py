"""Platform networking capability interface.

Everything the connectivity manager knows about the OS goes through
``Platform``. Implementations mutate real network state (``NmcliPlatform``)
or simulate it (``MockPlatform``).
"""

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

WirelessMode = Literal["sta", "ap"]

MODE_STATION = "sta"
MODE_ACCESS_POINT = "ap"


@dataclass
class WirelessNetwork:
    """A network seen in a scan."""

    ssid: str
    quality: int  # 0-100
    encryption: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "ssid": self.ssid,
            "quality": self.quality,
            "encryption": self.encryption,
        }


@dataclass
class WirelessStatus:
    """Snapshot of the wireless radio state.

    ``mode`` is ``"sta"``, ``"ap"`` or whatever else the platform reports.
    ``options["networks"]`` lists the configured station SSIDs.
    """

    enabled: bool
    mode: str
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def networks(self) -> list[str]:
        return list(self.options.get("networks") or [])

    @property
    def is_station(self) -> bool:
        return self.enabled and self.mode == MODE_STATION

    @property
    def is_access_point(self) -> bool:
        return self.mode == MODE_ACCESS_POINT


@dataclass
class InterfaceAddress:
    """An address bound to a network interface."""

    address: str
    family: Literal["IPv4", "IPv6"]
    internal: bool = False

    @classmethod
    def parse(cls, value: str) -> "InterfaceAddress":
        """Build from ``"192.168.1.5"`` or CIDR ``"192.168.1.5/24"`` notation."""
        iface = ipaddress.ip_interface(value.strip())
        ip = iface.ip
        return cls(
            address=str(ip),
            family="IPv4" if ip.version == 4 else "IPv6",
            internal=ip.is_loopback,
        )

    @property
    def is_usable_ipv4(self) -> bool:
        return self.family == "IPv4" and not self.internal


class Platform(ABC):
    """Network capabilities required for provisioning.

    Mutating calls report success as a bool rather than raising, so the
    caller decides whether a failure is fatal.
    """

    @abstractmethod
    async def scan_wireless_networks(self) -> list[WirelessNetwork]:
        """Return networks currently visible to the radio (may be empty)."""

    @abstractmethod
    async def get_wireless_mode(self) -> WirelessStatus:
        """Return the current wireless mode."""

    @abstractmethod
    async def set_wireless_mode(
        self,
        enabled: bool,
        mode: WirelessMode = MODE_STATION,
        options: dict[str, Any] | None = None,
    ) -> bool:
        """Switch the radio mode.

        Args:
            enabled: Bring the mode up (True) or down (False)
            mode: ``"sta"`` or ``"ap"``
            options: ``{"ssid", "key"}`` for station,
                ``{"ssid", "ipaddr"}`` for access point
        """

    @abstractmethod
    async def get_dhcp_server_status(self) -> bool:
        """Whether the local DHCP server is running."""

    @abstractmethod
    async def set_dhcp_server_status(self, enabled: bool) -> bool:
        """Start or stop the local DHCP server."""

    @abstractmethod
    async def get_network_addresses(self) -> dict[str, str]:
        """Primary addresses keyed by ``"lan"`` and ``"wlan"`` when present."""

    @abstractmethod
    async def get_interface_addresses(self, iface: str) -> list[InterfaceAddress]:
        """All addresses bound to ``iface``."""

    @abstractmethod
    async def get_mac_address(self, iface: str) -> str | None:
        """Hardware address of ``iface`` or None if unknown."""

    @abstractmethod
    async def get_hostname(self) -> str:
        """Host name of the device."""
