"""WiFi setup entry point.

Usage:
    python -m wifisetup [options]

Options:
    --config PATH     Path to config file (default: /etc/wifi-setup/config.yaml)
    --mock            Use the simulated platform (no network changes)
    --debug           Enable debug logging
    --reset-skip      Clear a previous "skip setup" choice before checking
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from .core.config import DEFAULT_CONFIG_PATH, Config, ConfigManager, get_config
from .core.logging import get_logger, setup_logging
from .network.manager import ConnectivityManager
from .network.platform import Platform
from .settings import SKIP_SETTING_KEY, SettingsStore

logger = get_logger(__name__)


class WiFiSetupService:
    """Runs reconciliation and, if needed, the captive portal until connected."""

    def __init__(self, config: Config, mock_mode: bool = False) -> None:
        """Initialize the service.

        Args:
            config: Loaded configuration
            mock_mode: Use the simulated platform
        """
        self._config = config
        self._mock_mode = mock_mode
        self._server = None
        self._stopping = False

        self.settings = SettingsStore(config.settings.path)
        self.manager = ConnectivityManager(
            platform=self._create_platform(),
            settings=self.settings,
            network=config.network,
            timing=config.timing,
        )

    def _create_platform(self) -> Platform:
        network = self._config.network

        if self._mock_mode:
            from .network.mock import MockPlatform

            logger.info("Using mock platform")
            return MockPlatform(wifi_interface=network.wifi_interface)

        from .network.nmcli import NmcliPlatform

        return NmcliPlatform(
            wifi_interface=network.wifi_interface,
            lan_interface=network.lan_interface,
        )

    async def run(self, reset_skip: bool = False) -> bool:
        """Reconcile connectivity, serving the portal until connected.

        Returns:
            True if connectivity was established
        """
        if reset_skip and await self.settings.delete_setting(SKIP_SETTING_KEY):
            logger.info("Cleared skip flag")

        if await self.manager.is_connectivity_configured():
            return True

        if self._stopping:
            logger.info("Shutdown requested, not starting captive portal")
            return False

        if not self._config.portal.enabled:
            logger.warning("Not connected and captive portal disabled")
            return False

        await self._serve_portal()
        return self.manager.connected.is_set

    async def _serve_portal(self) -> None:
        """Serve the captive portal until the connection signal fires."""
        import uvicorn

        from .network.captive_portal import create_app

        portal = self._config.portal
        server_config = uvicorn.Config(
            create_app(self.manager),
            host=portal.host,
            port=portal.port,
            log_level="warning",
        )
        self._server = uvicorn.Server(server_config)
        if self._stopping:
            return
        self.manager.connected.subscribe(self.stop)

        logger.info("Captive portal listening on http://%s:%d", portal.host, portal.port)
        await self._server.serve()
        logger.info("Captive portal stopped")

    def stop(self) -> None:
        """Ask the portal server to exit, or keep it from starting."""
        self._stopping = True
        if self._server is not None:
            self._server.should_exit = True


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wifi-setup",
        description="Bring the device online or start WiFi setup mode",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to config file",
    )
    parser.add_argument("--mock", action="store_true", help="Use the simulated platform")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--reset-skip",
        action="store_true",
        help="Clear a previous skip-setup choice",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    ConfigManager.get_instance(args.config)
    config = get_config()

    setup_logging(
        level="DEBUG" if args.debug else config.logging.level,
        log_format=config.logging.format,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )

    service = WiFiSetupService(config, mock_mode=args.mock)

    def shutdown(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        service.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        connected = asyncio.run(service.run(reset_skip=args.reset_skip))
    except Exception as e:
        logger.exception("WiFi setup failed: %s", e)
        return 1

    logger.info("Connected" if connected else "Not connected")
    return 0 if connected else 1


if __name__ == "__main__":
    sys.exit(main())
