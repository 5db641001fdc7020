"""Network management module.

Provides:
- Platform interface with nmcli and mock implementations
- ConnectivityManager for the provisioning state machine
- Captive portal front end for entering credentials
"""

from .platform import InterfaceAddress, Platform, WirelessNetwork, WirelessStatus
from .nmcli import NmcliPlatform
from .mock import MockPlatform
from .manager import ConnectionSignal, ConnectivityManager, ProvisioningState

__all__ = [
    "InterfaceAddress",
    "Platform",
    "WirelessNetwork",
    "WirelessStatus",
    "NmcliPlatform",
    "MockPlatform",
    "ConnectionSignal",
    "ConnectivityManager",
    "ProvisioningState",
]
