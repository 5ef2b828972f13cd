"""
Linux Platform Backend Implementation.

Drives removable USB storage using udisksctl, devmon, df, find, rsync,
dd and mkfs.*.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import psutil

from usbstation.core.config import CommandsConfig, MonitorConfig
from usbstation.core.logging import get_logger
from usbstation.core.models import raw_device_of
from usbstation.core.task import CommandResult, ProcessTask, run_captured, spawn_lines
from usbstation.platform.base import DriveBackend
from usbstation.platform.linux import parsers

if TYPE_CHECKING:
    from usbstation.core.models import FileEntry
    from usbstation.platform.base import LineCallback

logger = get_logger(__name__)


class LinuxBackend(DriveBackend):
    """Linux implementation of drive monitoring and drive operations."""

    # Tool paths (can be overridden for testing)
    DEVMON = "devmon"
    UDISKSCTL = "udisksctl"
    SYNC = "sync"
    DF = "df"
    FIND = "find"
    RSYNC = "rsync"
    DD = "dd"

    # Filesystem tools
    MKFS_VFAT = "/sbin/mkfs.vfat"
    MKFS_EXFAT = "/sbin/mkfs.exfat"
    MKFS_EXT4 = "/sbin/mkfs.ext4"

    # devmon --mount-all exits 3 when some drives were already mounted
    MOUNT_ALL_IGNORED_EXIT_CODES = frozenset({0, 3})

    def __init__(
        self,
        commands: CommandsConfig | None = None,
        monitor: MonitorConfig | None = None,
        rsync_options: list[str] | None = None,
        block_size: int = 4096,
    ) -> None:
        self.commands = commands or CommandsConfig()
        self.monitor = monitor or MonitorConfig()
        self.rsync_options = rsync_options if rsync_options is not None else ["-rIlptv", "--info=progress2"]
        self.block_size = block_size

    @property
    def name(self) -> str:
        return "linux"

    def _privileged(self, command: list[str]) -> list[str]:
        return [*self.commands.privilege_prefix, *command]

    def _spawn(
        self,
        command: list[str],
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
    ) -> ProcessTask:
        return spawn_lines(
            command,
            on_stdout_line,
            on_stderr_line,
            interrupt_grace_seconds=self.commands.interrupt_grace_seconds,
            terminate_timeout_seconds=self.commands.terminate_timeout_seconds,
        )

    def run_command(
        self,
        command: list[str],
        timeout: float | None = None,
        ok_returncodes: frozenset[int] = frozenset({0}),
    ) -> CommandResult:
        """
        Run a command to completion, logging failures.

        Exit codes in ``ok_returncodes`` are reported as 0.
        """
        result = run_captured(
            command,
            timeout=timeout or self.commands.command_timeout_seconds,
            interrupt_grace_seconds=self.commands.interrupt_grace_seconds,
            terminate_timeout_seconds=self.commands.terminate_timeout_seconds,
        )
        if result.returncode in ok_returncodes:
            result.returncode = 0
        if not result.success:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr[:500] if result.stderr else "",
            )
        return result

    # ==================== Monitoring ====================

    def monitor_command(self) -> list[str]:
        if self.monitor.backend == "udisksctl":
            return [self.UDISKSCTL, "monitor"]
        return [*self.commands.monitor_prefix, self.DEVMON]

    def start_monitor(self, on_line: LineCallback) -> ProcessTask:
        command = self.monitor_command()
        logger.info("Starting drive monitor", command=command)
        return self._spawn(
            command,
            on_line,
            lambda line: logger.debug("Monitor stderr", line=line),
        )

    def find_mount_point(self, partition_device: str) -> str | None:
        return parsers.find_mount_point(self.monitor.mount_table, partition_device)

    # ==================== Mount Operations ====================

    def mount(self, partition_device: str) -> CommandResult:
        return self.run_command(
            self._privileged(
                [self.UDISKSCTL, "mount", "--no-user-interaction", "-b", partition_device]
            )
        )

    def unmount(self, partition_device: str) -> CommandResult:
        return self.run_command(
            self._privileged(
                [self.UDISKSCTL, "unmount", "--no-user-interaction", "-b", partition_device]
            )
        )

    def mount_all(self) -> CommandResult:
        return self.run_command(
            [*self.commands.monitor_prefix, self.DEVMON, "--mount-all"],
            ok_returncodes=self.MOUNT_ALL_IGNORED_EXIT_CODES,
        )

    def unmount_all(self) -> CommandResult:
        return self.run_command(self._privileged([self.DEVMON, "--unmount-all"]))

    def sync(self) -> CommandResult:
        return self.run_command([self.SYNC])

    # ==================== Queries ====================

    def disk_usage(self, partition_device: str) -> CommandResult:
        return self.run_command(self._privileged([self.DF, partition_device]))

    def parse_disk_usage(self, output: str, partition_device: str) -> tuple[int, int] | None:
        usage = parsers.parse_df_output(output, partition_device)
        if usage is None:
            logger.debug("Unexpected df output", partition_device=partition_device, output=output[:200])
        return usage

    def list_files(self, mount_point: str, on_line: LineCallback) -> ProcessTask:
        return self._spawn(
            [self.FIND, mount_point, "-type", "f", "-printf", "%s\\t%P\\n"],
            on_line,
            lambda line: logger.debug("find stderr", line=line),
        )

    def parse_listing_line(self, line: str) -> FileEntry | None:
        return parsers.parse_find_line(line)

    # ==================== Long-running Operations ====================

    def copy_tree(
        self,
        source: str,
        destination: str,
        on_line: LineCallback,
        on_error_line: LineCallback | None = None,
    ) -> ProcessTask:
        # Trailing slash copies the contents of the source, not the directory itself
        source_dir = source if source.endswith("/") else source + "/"
        return self._spawn(
            [self.RSYNC, *self.rsync_options, source_dir, destination],
            on_line,
            on_error_line or (lambda line: logger.debug("rsync stderr", line=line)),
        )

    def parse_copy_progress(self, line: str) -> int | None:
        return parsers.parse_rsync_progress(line)

    def zero_fill(self, partition_device: str, on_progress_line: LineCallback) -> ProcessTask:
        return self._spawn(
            self._privileged(
                [
                    self.DD,
                    "if=/dev/zero",
                    f"of={partition_device}",
                    f"bs={self.block_size}",
                    "status=progress",
                    "oflag=direct",
                ]
            ),
            None,
            on_progress_line,
        )

    def parse_erase_progress(self, line: str) -> int | None:
        return parsers.parse_dd_progress(line)

    def is_out_of_space(self, line: str) -> bool:
        # dd on a whole partition always ends by running off the end
        return "No space left on device" in line

    def format(
        self, partition_device: str, filesystem: str, label: str | None = None
    ) -> CommandResult:
        mkfs_map = {
            "vfat": (self.MKFS_VFAT, [], "-n"),
            "exfat": (self.MKFS_EXFAT, [], "-n"),
            "ext4": (self.MKFS_EXT4, ["-F"], "-L"),
        }
        if filesystem not in mkfs_map:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Unsupported filesystem: {filesystem}",
                command=[],
            )

        mkfs_tool, default_args, label_flag = mkfs_map[filesystem]
        cmd = [mkfs_tool, *default_args]
        if label:
            cmd.extend([label_flag, label])
        cmd.append(partition_device)

        return self.run_command(self._privileged(cmd))

    # ==================== Utility Methods ====================

    def _get_system_devices(self) -> set[str]:
        """Get raw devices holding the root or boot filesystem."""
        system_devices: set[str] = set()
        for part in psutil.disk_partitions(all=False):
            if part.mountpoint in ("/", "/boot", "/boot/firmware"):
                device = os.path.realpath(part.device)
                system_devices.add(raw_device_of(device))
        return system_devices

    def is_system_device(self, partition_device: str) -> bool:
        """Check if a partition is on the disk holding the system."""
        return raw_device_of(partition_device) in self._get_system_devices()
