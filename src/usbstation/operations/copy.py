"""
Multi-destination copy.

Copies the contents of one drive onto several others in parallel, one
rsync per destination. Running the copies side by side keeps the source
in the page cache for every destination.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from usbstation.core.barrier import join_all_best_effort, join_all_or_abort
from usbstation.core.config import CopyConfig
from usbstation.core.job import Job, JobCancelledException, JobContext
from usbstation.core.logging import OperationLogger, get_logger
from usbstation.core.models import DriveRecord
from usbstation.core.task import TaskCancelledException, TaskHandle, TaskState, submit
from usbstation.monitor.registry import DriveRegistry

logger = get_logger(__name__)

# Progress stays below 100% until sync and unmount are done
PROGRESS_SCALE = 105

DestinationProgressCallback = Callable[[str, int, int], None]


class CopyError(Exception):
    """Raised when copying to one or more destinations failed."""


@dataclass
class CopyReport:
    """Outcome of a copy, per destination partition device."""

    source: str
    file_count: int = 0
    total_bytes: int = 0
    exit_codes: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class CopyJob(Job[CopyReport]):
    """Job copying one drive's files onto every destination drive."""

    def __init__(
        self,
        registry: DriveRegistry,
        source: DriveRecord,
        destinations: Sequence[DriveRecord],
        config: CopyConfig | None = None,
        on_progress: DestinationProgressCallback | None = None,
    ) -> None:
        super().__init__(
            name="copy",
            description=f"Copy {source.partition_device} to "
            + ", ".join(d.partition_device for d in destinations),
        )
        self.registry = registry
        self.backend = registry.backend
        self.source = source
        self.destinations = list(destinations)
        self.config = config or CopyConfig()
        self.on_progress = on_progress
        self._progress_lock = threading.Lock()
        self._progress: dict[str, int] = {d.partition_device: 0 for d in self.destinations}

    def validate(self) -> list[str]:
        errors = []
        if not self.destinations:
            errors.append("No destination drives selected")
        devices = [d.partition_device for d in self.destinations]
        if self.source.partition_device in devices:
            errors.append(f"Source {self.source.partition_device} is also a destination")
        if len(set(devices)) != len(devices):
            errors.append("Destination drives must be distinct")
        return errors

    def get_plan(self) -> str:
        targets = "\n".join(f"  -> {d.display_name} ({d.partition_device})" for d in self.destinations)
        unmount = "yes" if self.config.unmount_after_copy else "no"
        return f"""Copy Drive
==========
Source: {self.source.display_name} ({self.source.partition_device})
Destinations:
{targets}
Unmount destinations afterwards: {unmount}

Steps:
1. List files on the source drive
2. Mount source and destination drives
3. Run one rsync per destination in parallel
4. Sync, refresh drive sizes and listings
5. Unmount destinations
"""

    # ==================== Progress ====================

    def _set_progress(self, context: JobContext, device: str, current: int, total: int = PROGRESS_SCALE) -> None:
        with self._progress_lock:
            self._progress[device] = current * PROGRESS_SCALE // total if total else 0
            overall = sum(self._progress.values())

        context.update_progress(
            current=overall,
            total=PROGRESS_SCALE * len(self.destinations),
            stage="copying",
        )
        if self.on_progress is not None:
            try:
                self.on_progress(device, current, total)
            except Exception as e:
                logger.warning("Copy progress callback error", error=str(e))

    # ==================== Execution ====================

    def execute(self, context: JobContext) -> CopyReport:
        report = CopyReport(source=self.source.partition_device)

        with OperationLogger(
            "copy",
            logger,
            source=self.source.partition_device,
            destinations=[d.partition_device for d in self.destinations],
        ):
            context.update_progress(current=0, total=PROGRESS_SCALE * len(self.destinations), stage="listing")
            entries = self._wait(context, self.registry.get_file_listing(self.source))
            report.file_count = len(entries)
            report.total_bytes = sum(e.size_bytes for e in entries)
            context.update_progress(message=f"{report.file_count} files")

            if not entries:
                context.add_warning(f"Source {self.source.partition_device} has no files to copy")
                return report

            dest_tasks: list[TaskHandle[int]] = []
            try:
                source_mount = self.registry.ensure_mounted(self.source)
                dest_mounts = [self.registry.ensure_mounted(d) for d in self.destinations]
                self._check_free_space(context, report.total_bytes)
                context.check_cancelled()

                for dest, dest_mount in zip(self.destinations, dest_mounts):
                    dest_tasks.append(self._start_destination(context, dest, source_mount, dest_mount))

                def cancel_all() -> None:
                    for task in dest_tasks:
                        task.cancel()

                context.add_cancel_callback(cancel_all)

                join = join_all_or_abort if self.config.abort_on_first_failure else join_all_best_effort
                join(dest_tasks, name="copy").wait()
                context.remove_cancel_callback(cancel_all)

            finally:
                self._cleanup(dest_tasks)

            self._collect(report, dest_tasks)

            if not context.is_cancelled and report.succeeded:
                for dest in self.destinations:
                    self._set_progress(context, dest.partition_device, 100, 100)
                time.sleep(self.config.completion_delay_seconds)

            if context.is_cancelled:
                raise JobCancelledException("Copy was cancelled")
            if not report.succeeded:
                details = "; ".join(f"{device}: {error}" for device, error in report.failures.items())
                raise CopyError(f"Copy failed for {len(report.failures)} destination(s): {details}")
            return report

    def _wait(self, context: JobContext, task: TaskHandle[list]) -> list:
        context.add_cancel_callback(task.cancel)
        try:
            return task.result()
        except TaskCancelledException as e:
            raise JobCancelledException("Copy was cancelled") from e
        finally:
            context.remove_cancel_callback(task.cancel)

    def _check_free_space(self, context: JobContext, needed_bytes: int) -> None:
        for dest in self.destinations:
            record = self.registry.get_record(dest.partition_device) or dest
            free = record.free_bytes
            if 0 <= free < needed_bytes:
                context.add_warning(
                    f"{dest.partition_device} has {free} bytes free, source uses {needed_bytes}"
                )

    def _start_destination(
        self,
        context: JobContext,
        dest: DriveRecord,
        source_mount: str,
        dest_mount: str,
    ) -> TaskHandle[int]:
        device = dest.partition_device

        def on_line(line: str) -> None:
            percent = self.backend.parse_copy_progress(line)
            if percent is not None:
                self._set_progress(context, device, percent)

        def run(handle: TaskHandle[int]) -> int:
            process = self.backend.copy_tree(
                source_mount,
                dest_mount,
                on_line,
                lambda line: logger.debug("rsync stderr", destination=device, line=line),
            )
            handle.add_cancel_callback(process.cancel)
            returncode = process.result()
            # rsync reports 0% at the end when nothing needed copying
            self._set_progress(context, device, 100)
            if returncode != 0:
                raise CopyError(f"rsync exited with code {returncode}")
            logger.info("Copy to destination finished", destination=device)
            return returncode

        return submit(run, name=f"copy-{device}")

    def _cleanup(self, dest_tasks: list[TaskHandle[int]]) -> None:
        for task in dest_tasks:
            task.cancel()

        self.backend.sync()

        join_all_best_effort(
            [self.registry.update_usage(dest) for dest in self.destinations],
            name="copy-usage",
        ).wait()

        for dest in self.destinations:
            self.registry.invalidate(dest)

        if self.config.unmount_after_copy:
            for dest in self.destinations:
                if not self.registry.unmount(dest):
                    logger.warning("Could not unmount destination", destination=dest.partition_device)

    def _collect(self, report: CopyReport, dest_tasks: list[TaskHandle[int]]) -> None:
        for dest, task in zip(self.destinations, dest_tasks):
            device = dest.partition_device
            if task.state is TaskState.COMPLETED:
                report.exit_codes[device] = task.result()
                continue
            if task.state is TaskState.CANCELLED:
                report.exit_codes[device] = -1
                report.failures[device] = "cancelled"
                continue
            try:
                task.result()
            except Exception as e:
                report.exit_codes[device] = -1
                report.failures[device] = str(e)
                logger.warning("Copy to destination failed", destination=device, error=str(e))
        for dest in self.destinations[len(dest_tasks):]:
            report.failures[dest.partition_device] = "not started"
