"""WiFi setup for headless devices.

Decides at boot whether the device is online and otherwise runs a
captive portal access point to collect WiFi credentials.
"""

__version__ = "1.0.0"
