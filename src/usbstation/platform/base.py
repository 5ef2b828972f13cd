"""
USB Station Platform Backend Base.

Defines the abstract interface over the external tools the station drives.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from usbstation.core.models import FileEntry
    from usbstation.core.task import CommandResult, ProcessTask

LineCallback = Callable[[str], None]


class DriveBackend(ABC):
    """Abstract base class for drive monitoring and drive operations."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'linux')."""

    # ==================== Monitoring ====================

    @abstractmethod
    def start_monitor(self, on_line: LineCallback) -> ProcessTask:
        """Start the long-lived device monitor, feeding each stdout line to ``on_line``."""

    @abstractmethod
    def find_mount_point(self, partition_device: str) -> str | None:
        """Look up the mount point of a partition in the system mount table."""

    # ==================== Mount Operations ====================

    @abstractmethod
    def mount(self, partition_device: str) -> CommandResult:
        """Mount a partition at its default location."""

    @abstractmethod
    def unmount(self, partition_device: str) -> CommandResult:
        """Unmount a partition."""

    @abstractmethod
    def mount_all(self) -> CommandResult:
        """Mount every removable partition."""

    @abstractmethod
    def unmount_all(self) -> CommandResult:
        """Unmount every removable partition."""

    @abstractmethod
    def sync(self) -> CommandResult:
        """Flush filesystem buffers."""

    # ==================== Queries ====================

    @abstractmethod
    def disk_usage(self, partition_device: str) -> CommandResult:
        """Query total/used bytes of a mounted partition (two-line table on stdout)."""

    @abstractmethod
    def parse_disk_usage(self, output: str, partition_device: str) -> tuple[int, int] | None:
        """Parse ``disk_usage`` output into (total, used) bytes, None if it is for another device."""

    @abstractmethod
    def list_files(self, mount_point: str, on_line: LineCallback) -> ProcessTask:
        """Enumerate regular files below ``mount_point``, one ``size<TAB>path`` line each."""

    @abstractmethod
    def parse_listing_line(self, line: str) -> FileEntry | None:
        """Parse one line of ``list_files`` output."""

    # ==================== Long-running Operations ====================

    @abstractmethod
    def copy_tree(
        self,
        source: str,
        destination: str,
        on_line: LineCallback,
        on_error_line: LineCallback | None = None,
    ) -> ProcessTask:
        """Copy the contents of ``source`` into ``destination`` reporting progress lines."""

    @abstractmethod
    def parse_copy_progress(self, line: str) -> int | None:
        """Extract the overall percentage from a ``copy_tree`` progress line."""

    @abstractmethod
    def zero_fill(self, partition_device: str, on_progress_line: LineCallback) -> ProcessTask:
        """Overwrite a partition with zeros; progress lines arrive on stderr."""

    @abstractmethod
    def parse_erase_progress(self, line: str) -> int | None:
        """Extract the number of bytes written from a ``zero_fill`` progress line."""

    @abstractmethod
    def is_out_of_space(self, line: str) -> bool:
        """Whether a ``zero_fill`` error line reports the end of the device."""

    @abstractmethod
    def format(
        self, partition_device: str, filesystem: str, label: str | None = None
    ) -> CommandResult:
        """Create a filesystem on a partition."""

    # ==================== Utility Methods ====================

    @abstractmethod
    def is_system_device(self, partition_device: str) -> bool:
        """Check if a partition lives on the disk holding the root filesystem."""
