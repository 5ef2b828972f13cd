"""
USB Station session.

The station is the explicitly constructed entry point wiring together the
drive backend, the drive registry and the job runner, and exposing the
operations a front end needs.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from usbstation.core.config import UsbStationConfig, load_config
from usbstation.core.job import Job, JobProgress, JobResult, JobRunner
from usbstation.core.logging import get_logger, setup_logging
from usbstation.core.models import DriveRecord, FileEntry, OperationState
from usbstation.core.task import TaskHandle
from usbstation.monitor.registry import DriveRegistry, DrivesChangedListener
from usbstation.operations.copy import CopyJob, DestinationProgressCallback
from usbstation.operations.wipe import ProgressCallback, WipeJob
from usbstation.platform import get_platform_backend
from usbstation.platform.base import DriveBackend

logger = get_logger(__name__)


class Station:
    """
    Manages a USB Station session: drive monitoring and copy/wipe jobs.

    Use as a context manager, or call ``open()`` and ``close()``.
    """

    def __init__(
        self,
        config: UsbStationConfig | None = None,
        backend: DriveBackend | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()

        # Set up logging
        setup_logging(self.config.logging)

        self.backend = backend or get_platform_backend(self.config)
        self.registry = DriveRegistry(self.backend, self.config.monitor)
        self.job_runner = JobRunner()

        logger.info("Station created", station_id=self.id, backend=self.backend.name)

    # ==================== Lifecycle ====================

    def open(self) -> Station:
        self.registry.open()
        return self

    def close(self) -> None:
        for job in self.job_runner.list_jobs():
            if not job.finished:
                self.job_runner.cancel(job.id)
        self.registry.close()
        logger.info(
            "Station closed",
            station_id=self.id,
            duration_seconds=(datetime.now() - self.started_at).total_seconds(),
        )

    def __enter__(self) -> Station:
        return self.open()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # ==================== Drives ====================

    @property
    def drives(self) -> tuple[DriveRecord, ...]:
        """Current snapshot of plugged-in drives."""
        return self.registry.snapshot

    def add_listener(self, listener: DrivesChangedListener) -> None:
        self.registry.add_listener(listener)

    def remove_listener(self, listener: DrivesChangedListener) -> None:
        self.registry.remove_listener(listener)

    def find_drive(self, device: str) -> DriveRecord | None:
        """Find a plugged-in drive by partition device, raw device or mount point."""
        return self.registry.find(device)

    def wait_for_drive(self, device: str, timeout: float | None = None) -> DriveRecord | None:
        """Block until ``device`` shows up in the snapshot, or the timeout passes."""
        found = threading.Event()

        def listener(snapshot: Sequence[DriveRecord]) -> None:
            if any(device in (r.partition_device, r.raw_device, r.mount_point) for r in snapshot):
                found.set()

        self.registry.add_listener(listener)
        try:
            found.wait(timeout)
        finally:
            self.registry.remove_listener(listener)
        return self.find_drive(device)

    def get_file_listing(self, drive: DriveRecord) -> TaskHandle[list[FileEntry]]:
        return self.registry.get_file_listing(drive)

    def remount_all(self) -> None:
        self.registry.remount_all()

    # ==================== Operations ====================

    def submit_copy(
        self,
        source: DriveRecord,
        destinations: Sequence[DriveRecord],
        on_progress: DestinationProgressCallback | None = None,
    ) -> str:
        """Start copying ``source`` onto every destination. Returns the job ID."""
        job = CopyJob(self.registry, source, destinations, self.config.transfer, on_progress)
        return self._start(job)

    def submit_wipe(
        self,
        drive: DriveRecord,
        quick: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Start wiping ``drive``. Returns the job ID."""
        job = WipeJob(self.registry, drive, quick, self.config.wipe, on_progress)
        return self._start(job)

    def _start(self, job: Job[Any]) -> str:
        logger.info("Executing job", job_id=job.id, job_name=job.name, plan=job.get_plan())
        job_id = self.job_runner.submit(job)
        self.job_runner.start(job_id)
        return job_id

    def cancel(self, job_id: str) -> bool:
        """Request cancellation of a copy or wipe."""
        return self.job_runner.cancel(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> OperationState:
        """Wait for a job and return its user-facing state."""
        self.job_runner.wait(job_id, timeout)
        return self.get_state(job_id)

    def get_state(self, job_id: str) -> OperationState:
        return OperationState.from_job_status(self.job_runner.get_status(job_id))

    def get_progress(self, job_id: str) -> JobProgress | None:
        return self.job_runner.get_progress(job_id)

    def get_result(self, job_id: str) -> JobResult[Any] | None:
        return self.job_runner.get_result(job_id)
