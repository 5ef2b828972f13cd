"""
Secure wipe.

Runs unmount, zero fill, format, sync and remount in order on one
partition. Only the zero fill can be cancelled; once it is over the
pipeline always runs to the end so the drive is left usable.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

from usbstation.core.config import WipeConfig
from usbstation.core.job import Job, JobCancelledException, JobContext
from usbstation.core.logging import OperationLogger, get_logger
from usbstation.core.models import DriveRecord
from usbstation.core.task import TaskCancelledException
from usbstation.monitor.registry import DriveNotMountedError, DriveRegistry

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]

QUICK_WIPE_PROGRESS = 50


class WipeError(Exception):
    """Raised when a wipe step failed."""


class WipeJob(Job[str]):
    """Job erasing and reformatting one partition."""

    def __init__(
        self,
        registry: DriveRegistry,
        drive: DriveRecord,
        quick: bool = False,
        config: WipeConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        mode = "Quick wipe" if quick else "Wipe"
        super().__init__(name="wipe", description=f"{mode} {drive.partition_device}")
        self.registry = registry
        self.backend = registry.backend
        self.drive = drive
        self.quick = quick
        self.config = config or WipeConfig()
        self.on_progress = on_progress
        self._stage = "pending"
        self._stage_lock = threading.Lock()

    @property
    def stage(self) -> str:
        return self._stage

    def _enter_stage(self, stage: str) -> None:
        with self._stage_lock:
            self._stage = stage

    def can_cancel(self) -> bool:
        with self._stage_lock:
            return not self.quick and self._stage == "erasing"

    def validate(self) -> list[str]:
        errors = []
        if self.config.protect_system_disk and self.backend.is_system_device(self.drive.partition_device):
            errors.append(f"Refusing to wipe {self.drive.partition_device}: it is on the system disk")
        return errors

    def get_plan(self) -> str:
        erase = "Skipped (quick wipe)" if self.quick else "Overwrite with zeros"
        return f"""Wipe Drive
==========
Target: {self.drive.display_name} ({self.drive.partition_device})
Erase: {erase}
Filesystem: {self.config.filesystem}
Label: {self.config.label or "(none)"}

Steps:
1. Unmount the partition
2. {erase}
3. Sync and format
4. Sync and remount

WARNING: ALL DATA ON THIS PARTITION WILL BE DESTROYED!
"""

    def _report(self, context: JobContext, current: int, total: int = 100, message: str | None = None) -> None:
        context.update_progress(current=current, total=total, stage=self._stage, message=message)
        if self.on_progress is not None:
            try:
                self.on_progress(current, total)
            except Exception as e:
                logger.warning("Wipe progress callback error", error=str(e))

    def execute(self, context: JobContext) -> str:
        device = self.drive.partition_device

        with OperationLogger("wipe", logger, partition_device=device, quick=self.quick):
            self._enter_stage("unmounting")
            self._report(context, 0, message=f"Unmounting {device}")
            if not self.registry.unmount(self.drive):
                raise WipeError(f"Could not unmount {device}")
            self.registry.invalidate(self.drive)

            erase_error: str | None = None
            if self.quick:
                self._report(context, QUICK_WIPE_PROGRESS)
            else:
                erase_error = self._erase(context)

            self._enter_stage("formatting")
            self._report(context, context.get_progress().current, message=f"Formatting {device}")
            self.backend.sync()
            result = self.backend.format(device, self.config.filesystem, self.config.label)
            format_error = None if result.success else f"Format failed: {result.stderr.strip()}"
            self.backend.sync()

            self._enter_stage("remounting")
            try:
                self.registry.ensure_mounted(self.drive)
            except DriveNotMountedError as e:
                raise WipeError(f"Could not remount {device} after wipe") from e

            self._enter_stage("done")
            self._report(context, 100)
            time.sleep(self.config.completion_delay_seconds)

            if context.is_cancelled:
                raise JobCancelledException("Wipe was cancelled")
            errors = [error for error in (erase_error, format_error) if error]
            if errors:
                raise WipeError("; ".join(errors))

        return f"Wiped {device} and formatted as {self.config.filesystem}"

    def _erase(self, context: JobContext) -> str | None:
        """Zero-fill the partition. Returns an error message, or None."""
        device = self.drive.partition_device
        record = self.registry.get_record(device) or self.drive
        size = record.size_bytes
        stderr_tail: deque[str] = deque(maxlen=20)

        def on_line(line: str) -> None:
            stderr_tail.append(line)
            written = self.backend.parse_erase_progress(line)
            if written is not None and size > 0:
                self._report(context, min(100, round(written * 100 / size)))

        self._enter_stage("erasing")
        self._report(context, 0, message=f"Erasing {device}")
        task = self.backend.zero_fill(device, on_line)
        context.add_cancel_callback(task.cancel)
        try:
            returncode = task.result()
        except TaskCancelledException:
            logger.info("Erase cancelled", partition_device=device)
            return None
        except Exception as e:
            logger.warning("Erase failed", partition_device=device, error=str(e))
            return f"Erase failed: {e}"
        finally:
            # No cancelling once past the erase
            self._enter_stage("finishing")
            context.remove_cancel_callback(task.cancel)

        if returncode == 0 or any(self.backend.is_out_of_space(line) for line in stderr_tail):
            return None

        details = "\n".join(stderr_tail)
        logger.warning("Erase failed", partition_device=device, returncode=returncode, stderr=details[:500])
        return f"Erase exited with code {returncode}: {details}"
