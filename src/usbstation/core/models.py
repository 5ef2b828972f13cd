"""
USB Station data models.

Defines drive records, file listings, monitor lifecycle events and the
terminal states of user-facing operations.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from usbstation.core.job import JobStatus
    from usbstation.core.task import TaskHandle


_PARTITION_NUMBER = re.compile(r"\d+$")
_DRIVE_LETTER = re.compile(r"sd([a-z])$")


def raw_device_of(partition_device: str) -> str:
    """Strip the trailing partition number: ``/dev/sdb1`` -> ``/dev/sdb``."""
    return _PARTITION_NUMBER.sub("", partition_device)


def port_from_device(raw_device: str) -> int:
    """Derive a 1-based port from the drive letter (``/dev/sda`` -> 1), 0 if unknown."""
    match = _DRIVE_LETTER.search(raw_device)
    if match is None:
        return 0
    return ord(match.group(1)) - ord("a") + 1


class OperationState(Enum):
    """Terminal state shown to the user for a copy or wipe."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"

    @classmethod
    def from_job_status(cls, status: JobStatus | None) -> OperationState:
        from usbstation.core.job import JobStatus

        if status is JobStatus.COMPLETED:
            return cls.COMPLETED
        if status is JobStatus.CANCELLED:
            return cls.CANCELED
        if status is JobStatus.FAILED:
            return cls.ERROR
        return cls.RUNNING


@dataclass(frozen=True)
class FileEntry:
    """One regular file on a drive, relative to its mount point."""

    path: str
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size_bytes": self.size_bytes}


class ListingMemo:
    """
    Single-slot memo for a drive's file listing.

    Concurrent callers share one in-flight listing. A listing that ends
    cancelled or failed is forgotten so the next caller starts a fresh one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._task: TaskHandle[list[FileEntry]] | None = None

    @property
    def task(self) -> TaskHandle[list[FileEntry]] | None:
        return self._task

    @property
    def is_empty(self) -> bool:
        return self._task is None

    def get_or_start(
        self, factory: Callable[[], TaskHandle[list[FileEntry]]]
    ) -> TaskHandle[list[FileEntry]]:
        with self._lock:
            if self._task is not None:
                return self._task
            task = factory()
            self._task = task

        task.add_done_callback(self._forget_unless_completed)
        return task

    def clear(self) -> None:
        with self._lock:
            self._task = None

    def _forget_unless_completed(self, task: TaskHandle[list[FileEntry]]) -> None:
        from usbstation.core.task import TaskState

        if task.state is TaskState.COMPLETED:
            return
        with self._lock:
            if self._task is task:
                self._task = None


@dataclass
class DriveRecord:
    """
    State of one partition as seen by the drive registry.

    Sizes are -1 while unknown. ``mount_point`` is empty whenever
    ``mounted`` is False.
    """

    partition_device: str
    raw_device: str = ""
    plugged_in: bool = False
    mounted: bool = False
    mount_point: str = ""
    label: str = ""
    size_bytes: int = -1
    used_bytes: int = -1
    port: int = 0
    listing: ListingMemo = field(default_factory=ListingMemo, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.raw_device:
            self.raw_device = raw_device_of(self.partition_device)

    @property
    def identity_key(self) -> tuple[str, str, int]:
        return (self.partition_device, self.mount_point, self.port)

    @property
    def free_bytes(self) -> int:
        if self.size_bytes < 0 or self.used_bytes < 0:
            return -1
        return max(0, self.size_bytes - self.used_bytes)

    @property
    def display_name(self) -> str:
        name = self.label or self.partition_device
        if self.port:
            return f"{self.port}: {name}"
        return name

    def copy(self) -> DriveRecord:
        """Snapshot copy sharing this record's listing memo."""
        return DriveRecord(
            partition_device=self.partition_device,
            raw_device=self.raw_device,
            plugged_in=self.plugged_in,
            mounted=self.mounted,
            mount_point=self.mount_point,
            label=self.label,
            size_bytes=self.size_bytes,
            used_bytes=self.used_bytes,
            port=self.port,
            listing=self.listing,
        )

    def transfer_cache_from(self, old: DriveRecord) -> None:
        """Adopt ``old``'s listing memo when this record has none yet."""
        if self.listing.is_empty and not old.listing.is_empty:
            self.listing = old.listing

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_device": self.partition_device,
            "raw_device": self.raw_device,
            "plugged_in": self.plugged_in,
            "mounted": self.mounted,
            "mount_point": self.mount_point,
            "label": self.label,
            "size_bytes": self.size_bytes,
            "used_bytes": self.used_bytes,
            "free_bytes": self.free_bytes,
            "port": self.port,
        }


@dataclass(frozen=True)
class DriveAdded:
    partition_device: str


@dataclass(frozen=True)
class DriveRemoved:
    partition_device: str


@dataclass(frozen=True)
class DriveMounted:
    """A partition is mounted. ``None`` fields keep the registry's value."""

    partition_device: str
    mount_point: str
    label: str | None = None
    size_bytes: int | None = None
    port: int | None = None


@dataclass(frozen=True)
class DriveUnmounted:
    partition_device: str
    size_bytes: int | None = None
    port: int | None = None


DriveEvent = DriveAdded | DriveRemoved | DriveMounted | DriveUnmounted
