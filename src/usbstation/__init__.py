"""
USB Station - removable drive copy and wipe station.

Watches USB drives as they are plugged in and mounted, and copies or
securely wipes them with progress reporting and cancellation.
"""

__version__ = "1.0.0"
__author__ = "USB Station Team"

from usbstation.core.config import UsbStationConfig
from usbstation.core.session import Station

__all__ = ["Station", "UsbStationConfig", "__version__"]
