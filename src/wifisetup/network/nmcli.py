"""Platform implementation backed by NetworkManager/nmcli.

All operations use nmcli with list arguments (no shell), so SSIDs and
passwords never pass through a shell parser.

The access point is a dedicated nmcli connection in AP mode. Its DHCP
server is NetworkManager's shared IPv4 mode, so toggling DHCP means
switching the connection between ``ipv4.method manual`` and ``shared``.
"""

import asyncio
import logging
import socket
from typing import Any

from ..core.errors import PlatformCommandError
from ..core.retry import COMMAND_RETRY_CONFIG, async_retry
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

_WIFI_TYPES = ("802-11-wireless", "wifi")

# nmcli reports 802-11-wireless.mode; map onto station/access point
_NM_MODES = {
    "infrastructure": MODE_STATION,
    "ap": MODE_ACCESS_POINT,
}


def split_terse(line: str) -> list[str]:
    """Split an ``nmcli -t`` line on unescaped colons.

    nmcli escapes ``:`` and ``\\`` inside values with a backslash.
    """
    fields: list[str] = []
    current: list[str] = []
    escaped = False

    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)

    fields.append("".join(current))
    return fields


def parse_scan_output(output: str) -> list[WirelessNetwork]:
    """Parse ``nmcli -t -f SSID,SIGNAL,SECURITY device wifi list``.

    Hidden networks are dropped and each SSID is reported once with its
    strongest signal. Result is sorted by signal, strongest first.
    """
    best: dict[str, WirelessNetwork] = {}

    for line in output.splitlines():
        if not line.strip():
            continue

        parts = split_terse(line)
        if len(parts) < 3:
            continue

        ssid, signal_str, security = parts[0], parts[1], parts[2]
        if not ssid:
            continue

        try:
            quality = int(signal_str) if signal_str else 0
        except ValueError:
            quality = 0

        network = WirelessNetwork(
            ssid=ssid,
            quality=quality,
            encryption=security.strip() not in ("", "--"),
        )

        existing = best.get(ssid)
        if existing is None or network.quality > existing.quality:
            best[ssid] = network

    return sorted(best.values(), key=lambda n: n.quality, reverse=True)


def parse_device_addresses(output: str) -> list[InterfaceAddress]:
    """Parse ``nmcli -t -f IP4.ADDRESS,IP6.ADDRESS device show``.

    Lines look like ``IP4.ADDRESS[1]:192.168.1.100/24``.
    """
    addresses: list[InterfaceAddress] = []

    for line in output.splitlines():
        parts = split_terse(line)
        if len(parts) < 2 or "ADDRESS" not in parts[0]:
            continue

        value = ":".join(parts[1:]).strip()
        if not value:
            continue

        try:
            addresses.append(InterfaceAddress.parse(value))
        except ValueError:
            logger.debug("Ignoring unparseable address: %s", value)

    return addresses


class NmcliPlatform(Platform):
    """NetworkManager-backed platform.

    Usage:
        platform = NmcliPlatform(wifi_interface="wlan0")
        networks = await platform.scan_wireless_networks()
        await platform.set_wireless_mode(True, "sta", {"ssid": "Home", "key": "secret"})
    """

    HOTSPOT_CONNECTION = "wifi-setup-hotspot"

    def __init__(
        self,
        wifi_interface: str = "wlan0",
        lan_interface: str = "eth0",
        scan_settle: float = 2.0,
    ) -> None:
        """Initialize nmcli platform.

        Args:
            wifi_interface: Wireless interface name
            lan_interface: Wired interface name
            scan_settle: Seconds to let a rescan complete before listing
        """
        self._wifi_interface = wifi_interface
        self._lan_interface = lan_interface
        self._scan_settle = scan_settle

    async def _run_nmcli(
        self,
        *args: str,
        check: bool = True,
        timeout: float = 30.0,
    ) -> str:
        """Run nmcli command safely.

        Args:
            *args: nmcli arguments
            check: Raise on non-zero exit
            timeout: Command timeout in seconds

        Returns:
            Command stdout

        Raises:
            PlatformCommandError: If nmcli cannot be run, fails or times out
        """
        try:
            return await self._exec_nmcli(*args, check=check, timeout=timeout)
        except OSError as e:
            raise PlatformCommandError(
                f"Could not run nmcli: {e}", details={"args": args}, cause=e
            ) from e

    @async_retry(COMMAND_RETRY_CONFIG)
    async def _exec_nmcli(self, *args: str, check: bool, timeout: float) -> str:
        cmd = ["nmcli", *args]
        logger.debug("Running: nmcli %s", " ".join(args))

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            raise PlatformCommandError("nmcli command timed out", details={"args": args})

        if check and proc.returncode != 0:
            error_msg = stderr.decode().strip() if stderr else "Unknown error"
            raise PlatformCommandError(
                f"nmcli failed: {error_msg}",
                details={"args": args, "returncode": proc.returncode},
            )

        return stdout.decode().strip() if stdout else ""

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def scan_wireless_networks(self) -> list[WirelessNetwork]:
        await self._run_nmcli("device", "wifi", "rescan", "ifname", self._wifi_interface, check=False)
        await asyncio.sleep(self._scan_settle)

        output = await self._run_nmcli(
            "-t",
            "-f",
            "SSID,SIGNAL,SECURITY",
            "device",
            "wifi",
            "list",
            "ifname",
            self._wifi_interface,
        )
        networks = parse_scan_output(output)
        logger.info("Found %d WiFi networks", len(networks))
        return networks

    async def get_wireless_mode(self) -> WirelessStatus:
        radio = await self._run_nmcli("radio", "wifi", check=False)
        enabled = radio.strip().lower() == "enabled"

        mode = "none"
        connection = await self._get_device_value("GENERAL.CONNECTION")
        if connection:
            nm_mode = await self._run_nmcli(
                "-g", "802-11-wireless.mode", "connection", "show", connection, check=False
            )
            mode = _NM_MODES.get(nm_mode.strip(), nm_mode.strip() or "none")

        return WirelessStatus(
            enabled=enabled,
            mode=mode,
            options={"networks": await self._get_saved_networks()},
        )

    async def get_dhcp_server_status(self) -> bool:
        if not await self._hotspot_active():
            return False

        method = await self._run_nmcli(
            "-g", "ipv4.method", "connection", "show", self.HOTSPOT_CONNECTION, check=False
        )
        return method.strip() == "shared"

    async def get_network_addresses(self) -> dict[str, str]:
        addresses: dict[str, str] = {}

        for key, iface in (("lan", self._lan_interface), ("wlan", self._wifi_interface)):
            for addr in await self.get_interface_addresses(iface):
                if addr.is_usable_ipv4:
                    addresses[key] = addr.address
                    break

        return addresses

    async def get_interface_addresses(self, iface: str) -> list[InterfaceAddress]:
        try:
            output = await self._run_nmcli(
                "-t", "-f", "IP4.ADDRESS,IP6.ADDRESS", "device", "show", iface
            )
        except PlatformCommandError as e:
            # Missing interface, e.g. no ethernet port
            logger.debug("No addresses for %s: %s", iface, e)
            return []
        return parse_device_addresses(output)

    async def get_mac_address(self, iface: str) -> str | None:
        try:
            output = await self._run_nmcli("-g", "GENERAL.HWADDR", "device", "show", iface)
        except PlatformCommandError:
            return None
        mac = output.replace("\\:", ":").strip()
        return mac or None

    async def get_hostname(self) -> str:
        return socket.gethostname()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def set_wireless_mode(
        self,
        enabled: bool,
        mode: WirelessMode = MODE_STATION,
        options: dict[str, Any] | None = None,
    ) -> bool:
        options = options or {}

        try:
            if mode == MODE_ACCESS_POINT:
                if enabled:
                    await self._start_hotspot(options["ssid"], options["ipaddr"])
                else:
                    await self._stop_hotspot()
            elif mode == MODE_STATION:
                if enabled:
                    await self._join_network(options["ssid"], options.get("key"))
                else:
                    await self._run_nmcli("device", "disconnect", self._wifi_interface, check=False)
            else:
                logger.error("Unsupported wireless mode: %s", mode)
                return False
        except PlatformCommandError as e:
            logger.error("Failed to set wireless mode %s (enabled=%s): %s", mode, enabled, e)
            return False

        return True

    async def set_dhcp_server_status(self, enabled: bool) -> bool:
        try:
            if not await self._hotspot_defined():
                # Nothing to serve DHCP on; only "off" is satisfiable
                if enabled:
                    logger.error("Cannot enable DHCP server without an access point")
                return not enabled

            method = "shared" if enabled else "manual"
            await self._run_nmcli(
                "connection", "modify", self.HOTSPOT_CONNECTION, "ipv4.method", method
            )
            if await self._hotspot_active():
                await self._run_nmcli("connection", "up", self.HOTSPOT_CONNECTION)
        except PlatformCommandError as e:
            logger.error("Failed to set DHCP server status (enabled=%s): %s", enabled, e)
            return False

        return True

    async def _start_hotspot(self, ssid: str, ipaddr: str) -> None:
        """Create and activate the access point connection.

        Args:
            ssid: Hotspot SSID
            ipaddr: Address the device takes on the AP network
        """
        await self._run_nmcli("connection", "delete", self.HOTSPOT_CONNECTION, check=False)

        await self._run_nmcli(
            "connection",
            "add",
            "type",
            "wifi",
            "ifname",
            self._wifi_interface,
            "con-name",
            self.HOTSPOT_CONNECTION,
            "autoconnect",
            "no",
            "ssid",
            ssid,
            "802-11-wireless.mode",
            "ap",
            "802-11-wireless.band",
            "bg",
            "ipv4.method",
            "manual",
            "ipv4.addresses",
            f"{ipaddr}/24",
        )
        await self._run_nmcli("connection", "up", self.HOTSPOT_CONNECTION)
        logger.info("Hotspot created: %s", ssid)

    async def _stop_hotspot(self) -> None:
        """Deactivate and remove the access point connection."""
        await self._run_nmcli("connection", "down", self.HOTSPOT_CONNECTION, check=False)
        await self._run_nmcli("connection", "delete", self.HOTSPOT_CONNECTION, check=False)
        logger.info("Hotspot stopped")

    async def _join_network(self, ssid: str, key: str | None) -> None:
        """Define a station profile for ``ssid`` and start activating it.

        Does not wait for association; callers poll for that.
        """
        # Replace rather than duplicate a wifi profile for the same SSID;
        # wired or hotspot profiles sharing the name are left alone
        for uuid in await self._station_profile_uuids(ssid):
            await self._run_nmcli("connection", "delete", "uuid", uuid, check=False)

        cmd = [
            "connection",
            "add",
            "type",
            "wifi",
            "ifname",
            self._wifi_interface,
            "con-name",
            ssid,
            "ssid",
            ssid,
        ]
        if key:
            cmd.extend(["wifi-sec.key-mgmt", "wpa-psk", "wifi-sec.psk", key])

        await self._run_nmcli(*cmd)

        # Activate by UUID so a same-named wired profile is never picked
        created = await self._station_profile_uuids(ssid)
        target = ("uuid", created[-1]) if created else (ssid,)
        await self._run_nmcli("--wait", "0", "connection", "up", *target)
        logger.info("Station profile defined for %s", ssid)

    async def _get_device_value(self, field_name: str) -> str:
        try:
            output = await self._run_nmcli(
                "-g", field_name, "device", "show", self._wifi_interface
            )
        except PlatformCommandError:
            return ""
        return output.replace("\\:", ":").strip()

    async def _connections(self, active: bool = False) -> list[tuple[str, str]]:
        """(name, type) pairs of saved or active connections."""
        args = ["-t", "-f", "NAME,TYPE", "connection", "show"]
        if active:
            args.append("--active")

        try:
            output = await self._run_nmcli(*args)
        except PlatformCommandError:
            return []

        connections = []
        for line in output.splitlines():
            parts = split_terse(line)
            if len(parts) >= 2 and parts[0]:
                connections.append((parts[0], parts[1]))
        return connections

    async def _station_profile_uuids(self, name: str) -> list[str]:
        """UUIDs of saved wifi profiles called ``name``, excluding the hotspot."""
        if name == self.HOTSPOT_CONNECTION:
            return []

        try:
            output = await self._run_nmcli("-t", "-f", "NAME,UUID,TYPE", "connection", "show")
        except PlatformCommandError:
            return []

        uuids = []
        for line in output.splitlines():
            parts = split_terse(line)
            if len(parts) >= 3 and parts[0] == name and parts[2] in _WIFI_TYPES:
                uuids.append(parts[1])
        return uuids

    async def _get_saved_networks(self) -> list[str]:
        return [
            name
            for name, conn_type in await self._connections()
            if conn_type in _WIFI_TYPES and name != self.HOTSPOT_CONNECTION
        ]

    async def _hotspot_defined(self) -> bool:
        return any(name == self.HOTSPOT_CONNECTION for name, _ in await self._connections())

    async def _hotspot_active(self) -> bool:
        return any(
            name == self.HOTSPOT_CONNECTION for name, _ in await self._connections(active=True)
        )
