"""
USB Station drive monitoring.

Parses the output of the drive monitor tool into lifecycle events and
keeps the registry of currently plugged-in drives.
"""

from usbstation.monitor.parsers import DevmonParser, MonitorParser, UDisksCtlParser
from usbstation.monitor.registry import (
    DriveNotMountedError,
    DriveRegistry,
    FileListingError,
)

__all__ = [
    "DevmonParser",
    "DriveNotMountedError",
    "DriveRegistry",
    "FileListingError",
    "MonitorParser",
    "UDisksCtlParser",
]
