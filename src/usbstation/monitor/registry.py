"""
USB Station drive registry.

Keeps one record per partition device, rebuilt into a deduplicated,
sorted snapshot of plugged-in drives every time a lifecycle event is
applied. Listeners are called with every new snapshot.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence

from usbstation.core.config import MonitorConfig
from usbstation.core.logging import get_logger
from usbstation.core.models import (
    DriveAdded,
    DriveEvent,
    DriveMounted,
    DriveRecord,
    DriveRemoved,
    DriveUnmounted,
    FileEntry,
    ListingMemo,
    port_from_device,
)
from usbstation.core.task import ProcessTask, TaskHandle, submit
from usbstation.monitor.parsers import PARSERS, MonitorParser
from usbstation.platform.base import DriveBackend

logger = get_logger(__name__)

DrivesChangedListener = Callable[[Sequence[DriveRecord]], None]


class DriveNotMountedError(Exception):
    """Raised when a drive could not be mounted for an operation that needs it."""


class FileListingError(Exception):
    """Raised when enumerating the files on a drive fails."""


class DriveRegistry:
    """
    Registry of known drives, fed by the monitor's lifecycle events.

    Records are created on first sight of a partition device and never
    deleted. The published snapshot holds copies, so readers never see a
    record change under them.
    """

    def __init__(self, backend: DriveBackend, config: MonitorConfig | None = None) -> None:
        self.backend = backend
        self.config = config or MonitorConfig()
        self._lock = threading.RLock()
        self._records: dict[str, DriveRecord] = {}
        self._snapshot: tuple[DriveRecord, ...] = ()
        self._listeners: list[DrivesChangedListener] = []
        self._monitor: ProcessTask | None = None
        self._parser: MonitorParser | None = None

    # ==================== Lifecycle ====================

    def open(self) -> None:
        """Start the monitor process and begin applying its events."""
        if self._monitor is not None:
            return
        parser_class = PARSERS[self.config.backend]
        self._parser = parser_class(self.apply_event, self.backend.find_mount_point)
        self._monitor = self.backend.start_monitor(self._parser.consume)
        self._monitor.add_done_callback(self._monitor_exited)
        logger.info("Drive registry opened", backend=self.config.backend)

    def close(self) -> None:
        """Stop the monitor process and drop all listeners."""
        monitor = self._monitor
        self._monitor = None
        if monitor is not None:
            monitor.cancel()
        with self._lock:
            self._listeners.clear()
        logger.info("Drive registry closed")

    def _monitor_exited(self, task: TaskHandle[int]) -> None:
        if self._monitor is task and not task.cancelled:
            logger.warning("Drive monitor exited unexpectedly", state=task.state.name)

    @property
    def is_open(self) -> bool:
        return self._monitor is not None

    # ==================== Snapshot and Listeners ====================

    @property
    def snapshot(self) -> tuple[DriveRecord, ...]:
        return self._snapshot

    def get_record(self, partition_device: str) -> DriveRecord | None:
        """Return a copy of the record for ``partition_device``, if known."""
        with self._lock:
            record = self._records.get(partition_device)
            return record.copy() if record is not None else None

    def find(self, device: str) -> DriveRecord | None:
        """Find a plugged-in drive by partition device, raw device or mount point."""
        for record in self._snapshot:
            if device in (record.partition_device, record.raw_device, record.mount_point):
                return record
        return None

    def add_listener(self, listener: DrivesChangedListener) -> None:
        """Register ``listener`` and call it once with the current snapshot."""
        with self._lock:
            self._listeners.append(listener)
            self._call_listener(listener, self._snapshot)

    def remove_listener(self, listener: DrivesChangedListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _call_listener(self, listener: DrivesChangedListener, snapshot: tuple[DriveRecord, ...]) -> None:
        try:
            listener(snapshot)
        except Exception as e:
            logger.warning("Drives changed listener error", error=str(e))

    def drives_changed(self) -> None:
        """Rebuild the snapshot and notify listeners."""
        with self._lock:
            snapshot = self._recompute()
            for listener in list(self._listeners):
                self._call_listener(listener, snapshot)

    def _recompute(self) -> tuple[DriveRecord, ...]:
        old_snapshot = self._snapshot
        candidates = sorted(
            (record for record in self._records.values() if record.plugged_in),
            key=lambda r: (r.raw_device, -r.size_bytes, r.partition_device),
        )

        seen_raw: set[str] = set()
        snapshot: list[DriveRecord] = []
        for record in candidates:
            # Largest partition of each physical drive comes first
            if record.raw_device in seen_raw:
                continue
            seen_raw.add(record.raw_device)
            snapshot.append(record.copy())

        for new in snapshot:
            for old in old_snapshot:
                if old.identity_key == new.identity_key:
                    new.transfer_cache_from(old)
                    self._records[new.partition_device].listing = new.listing
                    break

        self._snapshot = tuple(snapshot)
        return self._snapshot

    # ==================== Event Application ====================

    def apply_event(self, event: DriveEvent) -> None:
        """Apply one lifecycle event, then publish a new snapshot."""
        refresh_usage: DriveRecord | None = None
        with self._lock:
            try:
                current = self._records.get(event.partition_device)
                if current is None:
                    current = DriveRecord(event.partition_device)
                updated = current.copy()
                self._apply(updated, event)
                if self._is_different_drive(current, updated, event):
                    updated.listing = ListingMemo()
                self._records[updated.partition_device] = updated
            except Exception as e:
                logger.error("Failed to apply drive event", drive_event=repr(event), error=str(e))
                return

            logger.info(
                "Drive event",
                drive_event=type(event).__name__,
                partition_device=updated.partition_device,
                mounted=updated.mounted,
                mount_point=updated.mount_point,
            )
            if isinstance(event, DriveMounted) and updated.mounted:
                refresh_usage = updated.copy()
            self.drives_changed()

        if refresh_usage is not None:
            self.update_usage(refresh_usage)

    @staticmethod
    def _is_different_drive(current: DriveRecord, updated: DriveRecord, event: DriveEvent) -> bool:
        """
        Whether ``updated`` no longer describes the drive ``current`` listed.

        Mounting or unmounting the same drive keeps its listing memo, so a
        listing that had to mount the drive first stays shared.
        """
        if isinstance(event, DriveRemoved):
            return True
        if current.mount_point and updated.mount_point and current.mount_point != updated.mount_point:
            return True
        return bool(current.port and updated.port and current.port != updated.port)

    def _apply(self, record: DriveRecord, event: DriveEvent) -> None:
        if isinstance(event, DriveAdded):
            record.plugged_in = True

        elif isinstance(event, DriveMounted) and event.mount_point:
            record.plugged_in = True
            record.mounted = True
            record.mount_point = event.mount_point
            if event.label is not None:
                record.label = event.label
            if event.port is not None:
                record.port = event.port
            elif not record.port:
                record.port = port_from_device(record.raw_device)
            # Sizes are refreshed by a usage query
            record.used_bytes = -1
            if event.size_bytes is not None:
                record.size_bytes = event.size_bytes
            else:
                record.size_bytes = -1

        elif isinstance(event, (DriveMounted, DriveUnmounted)):
            # Sizes are kept so free space can still be shown after a copy
            record.plugged_in = True
            record.mounted = False
            record.mount_point = ""
            size_bytes = getattr(event, "size_bytes", None)
            port = getattr(event, "port", None)
            if size_bytes is not None:
                record.size_bytes = size_bytes
            if port is not None:
                record.port = port

        elif isinstance(event, DriveRemoved):
            record.plugged_in = False
            record.mounted = False
            record.mount_point = ""
            record.label = ""
            record.port = 0
            record.size_bytes = -1
            record.used_bytes = -1

        else:
            raise TypeError(f"Unknown drive event: {event!r}")

    def _master(self, record: DriveRecord) -> DriveRecord:
        with self._lock:
            master = self._records.get(record.partition_device)
            if master is None:
                master = DriveRecord(record.partition_device)
                self._records[record.partition_device] = master
            return master

    # ==================== Mounting ====================

    def ensure_mounted(self, record: DriveRecord) -> str:
        """
        Make sure ``record`` is mounted and return its mount point.

        Mounts the drive if needed and polls the mount table until the
        mount shows up. Raises DriveNotMountedError when it never does.
        """
        master = self._master(record)
        if master.mounted and master.mount_point:
            return master.mount_point

        mount_point = self.backend.find_mount_point(record.partition_device)
        if mount_point is None:
            result = self.backend.mount(record.partition_device)
            if not result.success:
                logger.warning(
                    "Mount command failed",
                    partition_device=record.partition_device,
                    stderr=result.stderr[:500],
                )
            mount_point = self._poll_mount_point(record.partition_device, mounted=True)

        if mount_point is None:
            raise DriveNotMountedError(f"Could not mount {record.partition_device}")

        self.apply_event(DriveMounted(record.partition_device, mount_point))
        return mount_point

    def unmount(self, record: DriveRecord) -> bool:
        """Unmount ``record``, returning True once it is gone from the mount table."""
        result = self.backend.unmount(record.partition_device)
        if not result.success:
            # Already unmounted counts as success
            if self.backend.find_mount_point(record.partition_device) is not None:
                return False
        if self._poll_mount_point(record.partition_device, mounted=False) is not None:
            logger.warning("Drive still mounted after unmount", partition_device=record.partition_device)
            return False

        self.apply_event(DriveUnmounted(record.partition_device))
        return True

    def _poll_mount_point(self, partition_device: str, mounted: bool) -> str | None:
        mount_point = self.backend.find_mount_point(partition_device)
        for _ in range(self.config.mount_poll_attempts):
            if (mount_point is not None) == mounted:
                break
            time.sleep(self.config.mount_poll_interval_seconds)
            mount_point = self.backend.find_mount_point(partition_device)
        return mount_point

    def remount_all(self) -> None:
        """Sync, unmount every drive, then mount them all again."""
        self.backend.sync()
        self.backend.unmount_all()
        self.backend.mount_all()

    # ==================== Cached Derived Data ====================

    def get_file_listing(self, record: DriveRecord) -> TaskHandle[list[FileEntry]]:
        """
        Return the memoized listing task for ``record``.

        Concurrent callers share one in-flight listing. A cancelled or
        failed listing is forgotten so that a later call starts over.
        """
        master = self._master(record)
        return master.listing.get_or_start(lambda: self._start_listing(record))

    def _start_listing(self, record: DriveRecord) -> TaskHandle[list[FileEntry]]:
        def run(handle: TaskHandle[list[FileEntry]]) -> list[FileEntry]:
            mount_point = self.ensure_mounted(record)
            handle.check_cancelled()

            entries: list[FileEntry] = []

            def on_line(line: str) -> None:
                entry = self.backend.parse_listing_line(line)
                if entry is not None:
                    entries.append(entry)

            logger.info("Listing files", partition_device=record.partition_device, mount_point=mount_point)
            task = self.backend.list_files(mount_point, on_line)
            handle.add_cancel_callback(task.cancel)
            returncode = task.result()
            handle.check_cancelled()
            if returncode != 0:
                raise FileListingError(
                    f"Listing {mount_point} failed with exit code {returncode}"
                )

            entries.sort(key=lambda e: e.path)
            logger.info("Listed files", partition_device=record.partition_device, count=len(entries))
            return entries

        return submit(run, name=f"list-{record.partition_device}")

    def invalidate(self, record: DriveRecord) -> None:
        """Forget the cached file listing of ``record``."""
        self._master(record).listing.clear()

    def update_usage(self, record: DriveRecord) -> TaskHandle[tuple[int, int] | None]:
        """
        Query size and used bytes of ``record`` in the background.

        On success the record is updated and listeners are notified. When
        the usage tool reports some other filesystem (the drive is still
        being mounted) the query is retried after a delay.
        """

        def run(handle: TaskHandle[tuple[int, int] | None]) -> tuple[int, int] | None:
            for attempt in range(self.config.usage_retry_attempts):
                handle.check_cancelled()
                result = self.backend.disk_usage(record.partition_device)
                if not result.success:
                    logger.warning(
                        "Could not get drive usage",
                        partition_device=record.partition_device,
                        stderr=result.stderr[:500],
                    )
                    return None

                usage = self.backend.parse_disk_usage(result.stdout, record.partition_device)
                if usage is not None:
                    total, used = usage
                    with self._lock:
                        master = self._master(record)
                        master.size_bytes = total
                        master.used_bytes = used
                        self.drives_changed()
                    return usage

                logger.info(
                    "Got usage for wrong drive, retrying",
                    partition_device=record.partition_device,
                    attempt=attempt + 1,
                )
                if attempt + 1 < self.config.usage_retry_attempts:
                    handle.wait(self.config.usage_retry_delay_seconds)
            return None

        return submit(run, name=f"usage-{record.partition_device}")
