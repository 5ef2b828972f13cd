"""
USB Station Platform Abstraction Layer.

Provides the drive backend for the current OS.
"""

from __future__ import annotations

import platform

from usbstation.core.config import UsbStationConfig
from usbstation.platform.base import DriveBackend


def get_platform_backend(config: UsbStationConfig | None = None) -> DriveBackend:
    """Get the appropriate drive backend for the current OS."""
    config = config or UsbStationConfig()
    system = platform.system().lower()

    if system == "linux":
        from usbstation.platform.linux import LinuxBackend

        return LinuxBackend(
            commands=config.commands,
            monitor=config.monitor,
            rsync_options=config.transfer.rsync_options,
            block_size=config.wipe.block_size,
        )
    raise RuntimeError(f"Unsupported platform: {system}")


def get_platform_name() -> str:
    """Get the current platform name."""
    return platform.system().lower()


__all__ = ["DriveBackend", "get_platform_backend", "get_platform_name"]
