"""Connectivity manager: decides between station mode and setup mode.

Provides:
- Boot-time reconciliation (``is_connectivity_configured``)
- Polling for station association (``wait_for_wifi``)
- Network scanning that tolerates empty radio results (``scan``)
- Applying new credentials from the captive portal (``apply_credentials``)
- The operator "skip setup" override (``skip_setup``)
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable

from ..core.config import NetworkConfig, TimingConfig
from ..core.errors import (
    ConnectionTimeoutError,
    ConnectionWaitError,
    NoNetworksConfiguredError,
    PlatformCommandError,
    ProvisioningError,
    SettingsError,
    TransitionInProgressError,
    ValidationError,
)
from ..core.retry import PollConfig, Sleep, poll
from ..core.threading import LockedValue
from ..settings import SKIP_SETTING_KEY, SettingsStore
from .platform import MODE_ACCESS_POINT, MODE_STATION, Platform, WirelessNetwork

logger = logging.getLogger(__name__)

MAX_SSID_LENGTH = 32
MAX_PASSWORD_LENGTH = 63


class ProvisioningState(Enum):
    """Where the device is in the setup flow."""

    IDLE = "idle"
    CHECKING = "checking"
    CONNECTED = "connected"
    SKIPPED = "skipped"
    AP_ACTIVE = "ap_active"
    CONNECTING = "connecting"
    FAILED = "failed"


class ConnectionSignal:
    """One-shot "connectivity established" notification.

    ``fire`` takes effect once; later calls are ignored. Subscribers run
    exactly once, including those that subscribe after the signal fired.

    Usage:
        signal = ConnectionSignal()
        signal.subscribe(lambda: print("online"))
        await signal.wait()
    """

    def __init__(self) -> None:
        self._fired = False
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        with self._lock:
            return self._fired

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the signal fires (now, if it already has)."""
        with self._lock:
            if not self._fired:
                self._callbacks.append(callback)
                return
        self._invoke(callback)

    def fire(self) -> bool:
        """Fire the signal.

        Returns:
            True if this call fired it, False if it had already fired
        """
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            callbacks, self._callbacks = self._callbacks, []

        self._event.set()
        for callback in callbacks:
            self._invoke(callback)
        return True

    async def wait(self) -> None:
        """Suspend until the signal fires."""
        await self._event.wait()

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.error("Error in on_connected callback: %s", e)


class ConnectivityManager:
    """Reconciles desired connectivity with the platform's network state.

    Only one transition (reconcile, connect or skip) runs at a time;
    an overlapping request raises ``TransitionInProgressError``.

    Usage:
        manager = ConnectivityManager(NmcliPlatform(), SettingsStore(path))
        manager.connected.subscribe(start_services)
        if not await manager.is_connectivity_configured():
            ...  # serve the captive portal
    """

    def __init__(
        self,
        platform: Platform,
        settings: SettingsStore,
        network: NetworkConfig | None = None,
        timing: TimingConfig | None = None,
        signal: ConnectionSignal | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize connectivity manager.

        Args:
            platform: Platform networking adapter
            settings: Persistent settings store
            network: AP and interface configuration
            timing: Retry budgets and settle delays
            signal: Completion signal (a new one is created if omitted)
            sleep: Awaitable delay, injectable for tests
        """
        self._platform = platform
        self._settings = settings
        self._network = network or NetworkConfig()
        self._timing = timing or TimingConfig()
        self._sleep = sleep

        self.connected = signal or ConnectionSignal()

        self._state = LockedValue(ProvisioningState.IDLE)
        self._transition_lock = asyncio.Lock()

    @property
    def state(self) -> ProvisioningState:
        return self._state.get()

    @property
    def network_config(self) -> NetworkConfig:
        return self._network

    @property
    def in_transition(self) -> bool:
        return self._transition_lock.locked()

    @asynccontextmanager
    async def _transition(self, name: str) -> AsyncIterator[None]:
        """Hold the single transition slot or fail fast."""
        if self._transition_lock.locked():
            logger.warning("Rejecting %s: another transition is in progress", name)
            raise TransitionInProgressError()

        async with self._transition_lock:
            logger.debug("Transition started: %s", name)
            yield
            logger.debug("Transition finished: %s", name)

    def _mark_connected(self, state: ProvisioningState = ProvisioningState.CONNECTED) -> bool:
        self._state.set(state)
        if self.connected.fire():
            logger.info("Connectivity established")
        return True

    # -------------------------------------------------------------------------
    # Access point lifecycle
    # -------------------------------------------------------------------------

    async def hotspot_ssid(self) -> str:
        """SSID for the setup hotspot: base name plus the MAC's last two octets.

        ``"Gateway"`` with MAC ``aa:bb:cc:dd:ee:ff`` gives ``"Gateway EEFF"``.
        """
        base = self._network.ap_ssid_base
        mac = await self._platform.get_mac_address(self._network.wifi_interface)
        if not mac:
            return base

        suffix = "".join(mac.split(":")[4:]).upper()
        return f"{base} {suffix}" if suffix else base

    async def start_ap(self) -> bool:
        """Bring up the access point and its DHCP server.

        Returns:
            True if both steps succeeded
        """
        ssid = await self.hotspot_ssid()
        logger.info("Starting access point %s on %s", ssid, self._network.ap_ip)

        if not await self._platform.set_wireless_mode(
            True, MODE_ACCESS_POINT, {"ssid": ssid, "ipaddr": self._network.ap_ip}
        ):
            return False

        return await self._platform.set_dhcp_server_status(True)

    async def stop_ap(self) -> bool:
        """Take down the access point and its DHCP server.

        Returns:
            True if both steps succeeded
        """
        logger.info("Stopping access point")

        if not await self._platform.set_wireless_mode(False, MODE_ACCESS_POINT):
            logger.error("Failed to disable access point mode")
            return False

        if not await self._platform.set_dhcp_server_status(False):
            logger.error("Failed to stop DHCP server")
            return False

        return True

    async def ensure_ap_stopped(self) -> bool:
        """Stop the access point if it looks active (e.g. left over from a previous run).

        If the platform cannot report its state the stop is issued anyway.

        Returns:
            True if a stop was issued
        """
        try:
            dhcp_running = await self._platform.get_dhcp_server_status()
            status = await self._platform.get_wireless_mode()
        except PlatformCommandError as e:
            logger.warning("Could not query access point state, stopping it anyway: %s", e)
            await self.stop_ap()
            return True

        if dhcp_running or status.mode == MODE_ACCESS_POINT:
            logger.info("Access point active (dhcp=%s, mode=%s), stopping", dhcp_running, status.mode)
            await self.stop_ap()
            return True

        return False

    # -------------------------------------------------------------------------
    # Station mode
    # -------------------------------------------------------------------------

    async def define_network(self, ssid: str, password: str | None = None) -> bool:
        """Apply station-mode configuration for ``ssid``."""
        return await self._platform.set_wireless_mode(
            True, MODE_STATION, {"ssid": ssid, "key": password}
        )

    async def hostname(self) -> str:
        return await self._platform.get_hostname()

    async def is_station_connected(self) -> bool:
        """Whether the radio reports an enabled station mode."""
        status = await self._platform.get_wireless_mode()
        return status.is_station

    async def has_wifi_address(self) -> bool:
        """Whether the wireless interface holds a non-internal IPv4 address."""
        addresses = await self._platform.get_interface_addresses(self._network.wifi_interface)
        return any(addr.is_usable_ipv4 for addr in addresses)

    async def _station_ready(self) -> bool:
        try:
            status = await self._platform.get_wireless_mode()
        except PlatformCommandError as e:
            logger.debug("Wireless mode query failed: %s", e)
            return False

        if not status.is_station:
            logger.debug("No wifi connection yet (mode=%s, enabled=%s)", status.mode, status.enabled)
            return False

        # Station mode is reported before DHCP completes
        if await self.has_wifi_address():
            logger.info("WiFi connection found")
            return True

        logger.debug("Station mode without an address yet")
        return False

    async def wait_for_wifi(
        self,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> int:
        """Poll until the device is associated with an address.

        Args:
            max_attempts: Number of checks (default from timing config)
            interval: Seconds between checks (default from timing config)

        Returns:
            The attempt number that succeeded

        Raises:
            NoNetworksConfiguredError: Nothing configured; no polling done
            ConnectionTimeoutError: All attempts used without association
        """
        config = PollConfig(
            max_attempts=max_attempts if max_attempts is not None else self._timing.wait_attempts,
            interval=interval if interval is not None else self._timing.wait_interval,
        )

        status = await self._platform.get_wireless_mode()
        if not status.networks:
            logger.info("No wifi networks configured, skipping wait")
            raise NoNetworksConfiguredError()

        logger.info("Waiting for wifi, configured networks: %s", ", ".join(status.networks))
        try:
            return await poll(self._station_ready, config, sleep=self._sleep, label="wait_for_wifi")
        except ConnectionTimeoutError:
            logger.warning("No wifi available after %d attempts, giving up", config.max_attempts)
            raise

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    async def scan(self) -> list[WirelessNetwork]:
        """List visible networks, retrying while the radio returns nothing.

        Never raises. Returns an empty list if every attempt came back empty.
        """
        config = PollConfig(self._timing.scan_attempts, self._timing.scan_interval)
        results: list[WirelessNetwork] = []

        async def attempt() -> bool:
            nonlocal results
            try:
                results = await self._platform.scan_wireless_networks()
            except (ProvisioningError, OSError) as e:
                logger.warning("Scan failed: %s", e)
                results = []
            return bool(results)

        try:
            await poll(attempt, config, sleep=self._sleep, label="scan")
        except ConnectionTimeoutError:
            logger.error("Giving up. No scan results available")
            return []

        return results

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _is_skipped(self) -> bool:
        try:
            return bool(await self._settings.get_setting(SKIP_SETTING_KEY))
        except (SettingsError, OSError) as e:
            # Fail open: a broken store must not block boot
            logger.debug("Skip flag unavailable, treating as not skipped: %s", e)
            return False

    def _is_preprovisioned(self) -> bool:
        marker = self._network.preprovisioned_marker
        return bool(marker) and Path(marker).exists()

    async def _has_wired_address(self) -> bool:
        try:
            addresses = await self._platform.get_network_addresses()
        except PlatformCommandError as e:
            logger.warning("Could not read network addresses: %s", e)
            return False
        return bool(addresses.get("lan"))

    async def is_connectivity_configured(self) -> bool:
        """Decide whether the device is online; otherwise enter setup mode.

        Returns:
            True if connectivity is established (skipped, pre-provisioned,
            wired, or WiFi verified); False after starting the access point
        """
        async with self._transition("reconcile"):
            self._state.set(ProvisioningState.CHECKING)

            if await self._is_skipped():
                logger.info("WiFi setup was skipped")
                await self.ensure_ap_stopped()
                return self._mark_connected(ProvisioningState.SKIPPED)

            if self._is_preprovisioned():
                logger.info("Device is pre-provisioned, assuming connectivity")
                await self.ensure_ap_stopped()
                return self._mark_connected()

            if await self._has_wired_address():
                logger.info("Wired connection present")
                await self.ensure_ap_stopped()
                return self._mark_connected()

            try:
                await self.wait_for_wifi()
            except NoNetworksConfiguredError:
                pass
            except ProvisioningError as e:
                logger.warning("Error waiting for wifi: %s", e)
            else:
                await self.ensure_ap_stopped()
                return self._mark_connected()

            logger.info("No wifi connection found, starting AP")
            if await self.start_ap():
                self._state.set(ProvisioningState.AP_ACTIVE)
            else:
                # Left without connectivity; an operator has to intervene
                logger.error("Failed to start AP")
                self._state.set(ProvisioningState.FAILED)
            return False

    async def apply_credentials(self, ssid: str, password: str | None = None) -> bool:
        """Leave setup mode and join ``ssid``.

        Args:
            ssid: Network SSID (surrounding whitespace is removed)
            password: Network key; empty or None for open networks

        Returns:
            True once associated, False if the wait timed out

        Raises:
            ValidationError: Bad SSID or password
            PlatformCommandError: Station configuration could not be applied,
                or the radio could not be queried while waiting
            TransitionInProgressError: Another transition is running
        """
        ssid, password = self.normalize_credentials(ssid, password)

        async with self._transition("connect"):
            self._state.set(ProvisioningState.CONNECTING)

            # Let the portal response reach the client before the AP drops
            await self._sleep(self._timing.response_flush_delay)
            if not await self.stop_ap():
                logger.warning("Access point did not stop cleanly, continuing")

            # AP teardown briefly disrupts networking; let it settle
            await self._sleep(self._timing.ap_settle_delay)

            if not await self.define_network(ssid, password):
                logger.error("Failed to define network %s", ssid)
                self._state.set(ProvisioningState.FAILED)
                raise PlatformCommandError("Failed to define network", details={"ssid": ssid})

            try:
                await self.wait_for_wifi()
            except ConnectionWaitError as e:
                logger.error("Could not connect to %s: %s", ssid, e)
                self._state.set(ProvisioningState.FAILED)
                return False
            except ProvisioningError as e:
                logger.error("Error waiting for %s: %s", ssid, e)
                self._state.set(ProvisioningState.FAILED)
                raise

            logger.info("Connected to %s", ssid)
            return self._mark_connected()

    async def skip_setup(self) -> None:
        """Operator override: persist the skip flag and leave setup mode."""
        async with self._transition("skip"):
            logger.info("WiFi setup skipped, stopping the AP")

            try:
                await self._settings.set_setting(SKIP_SETTING_KEY, True)
            except (SettingsError, OSError) as e:
                logger.error("Failed to store %s: %s", SKIP_SETTING_KEY, e)

            await self.stop_ap()
            self._mark_connected(ProvisioningState.SKIPPED)

    @staticmethod
    def normalize_credentials(ssid: str, password: str | None) -> tuple[str, str | None]:
        ssid = (ssid or "").strip()
        password = (password or "").strip() or None

        if not ssid:
            raise ValidationError("SSID cannot be empty")
        if len(ssid.encode()) > MAX_SSID_LENGTH:
            raise ValidationError("SSID too long (max 32 bytes)")
        if password and len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("Password too long (max 63 characters)")

        return ssid, password
