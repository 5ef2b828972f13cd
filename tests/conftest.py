"""
Pytest configuration and fixtures for USB Station tests.
"""

import sys
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from usbstation.core.config import (  # noqa: E402
    CommandsConfig,
    CopyConfig,
    MonitorConfig,
    UsbStationConfig,
    WipeConfig,
)
from usbstation.core.models import DriveMounted, DriveRecord  # noqa: E402
from usbstation.core.task import CommandResult, TaskHandle  # noqa: E402
from usbstation.monitor.registry import DriveRegistry  # noqa: E402
from usbstation.platform.base import DriveBackend  # noqa: E402
from usbstation.platform.linux import parsers  # noqa: E402


class FakeBackend(DriveBackend):
    """
    In-memory stand-in for the external tools.

    Keeps its own mount table, records every call in ``calls`` and returns
    task handles that either finish immediately or block until cancelled.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.mounts: dict[str, str] = {}
        self.mount_fails: set[str] = set()
        self.unmount_fails: set[str] = set()
        self.on_unmount: Callable[[str], None] | None = None
        self.usage: dict[str, tuple[int, int]] = {}
        self.usage_outputs: dict[str, list[str]] = {}
        self.files: dict[str, list[tuple[int, str]]] = {}
        self.list_blocking = False
        self.list_started = threading.Event()
        self.copy_lines: list[str] = []
        self.copy_exit_codes: dict[str, int] = {}
        self.copy_blocking: set[str] = set()
        self.copy_started = threading.Semaphore(0)
        self.zero_fill_lines: list[str] = []
        self.zero_fill_exit_code = 0
        self.zero_fill_blocking = False
        self.zero_fill_started = threading.Event()
        self.format_exit_code = 0
        self.system_devices: set[str] = set()
        self.running: list[TaskHandle[int]] = []
        self.monitor_line = None
        self.monitor_task: TaskHandle[int] | None = None
        self._lock = threading.Lock()

    def _record(self, *call: str) -> None:
        with self._lock:
            self.calls.append(call)

    def called(self, name: str) -> list[tuple[str, ...]]:
        with self._lock:
            return [c for c in self.calls if c[0] == name]

    def _result(self, returncode: int, stdout: str = "", stderr: str = "") -> CommandResult:
        return CommandResult(returncode=returncode, stdout=stdout, stderr=stderr, command=[])

    def _blocking(self, name: str) -> TaskHandle[int]:
        task: TaskHandle[int] = TaskHandle(name)
        with self._lock:
            self.running.append(task)
        return task

    @property
    def name(self) -> str:
        return "fake"

    def start_monitor(self, on_line):
        self._record("start_monitor")
        self.monitor_line = on_line
        self.monitor_task = TaskHandle("monitor")
        return self.monitor_task

    def find_mount_point(self, partition_device: str) -> str | None:
        return self.mounts.get(partition_device)

    def mount(self, partition_device: str) -> CommandResult:
        self._record("mount", partition_device)
        if partition_device in self.mount_fails:
            return self._result(1, stderr="mount failed")
        self.mounts[partition_device] = "/media/pi/" + partition_device.rsplit("/", 1)[-1]
        return self._result(0)

    def unmount(self, partition_device: str) -> CommandResult:
        self._record("unmount", partition_device)
        if self.on_unmount is not None:
            self.on_unmount(partition_device)
        if partition_device in self.unmount_fails:
            return self._result(1, stderr="target is busy")
        self.mounts.pop(partition_device, None)
        return self._result(0)

    def mount_all(self) -> CommandResult:
        self._record("mount_all")
        return self._result(0)

    def unmount_all(self) -> CommandResult:
        self._record("unmount_all")
        return self._result(0)

    def sync(self) -> CommandResult:
        self._record("sync")
        return self._result(0)

    def disk_usage(self, partition_device: str) -> CommandResult:
        self._record("disk_usage", partition_device)
        queued = self.usage_outputs.get(partition_device)
        if queued:
            return self._result(0, stdout=queued.pop(0))
        if partition_device not in self.usage:
            return self._result(1, stderr="df: no such device")
        total, used = self.usage[partition_device]
        return self._result(0, stdout=df_output(partition_device, total, used))

    def parse_disk_usage(self, output: str, partition_device: str):
        return parsers.parse_df_output(output, partition_device)

    def list_files(self, mount_point: str, on_line):
        self._record("list_files", mount_point)
        for size, path in self.files.get(mount_point, []):
            on_line(f"{size}\t{path}")
        if self.list_blocking:
            task = self._blocking("find")
            self.list_started.set()
            return task
        return TaskHandle.completed(0)

    def parse_listing_line(self, line: str):
        return parsers.parse_find_line(line)

    def copy_tree(self, source, destination, on_line, on_error_line=None):
        self._record("copy_tree", source, destination)
        for line in self.copy_lines:
            on_line(line)
        if destination in self.copy_blocking:
            task = self._blocking("rsync")
        else:
            task = TaskHandle.completed(self.copy_exit_codes.get(destination, 0))
        self.copy_started.release()
        return task

    def parse_copy_progress(self, line: str):
        return parsers.parse_rsync_progress(line)

    def zero_fill(self, partition_device, on_progress_line):
        self._record("zero_fill", partition_device)
        for line in self.zero_fill_lines:
            on_progress_line(line)
        if self.zero_fill_blocking:
            task = self._blocking("dd")
        else:
            task = TaskHandle.completed(self.zero_fill_exit_code)
        self.zero_fill_started.set()
        return task

    def parse_erase_progress(self, line: str):
        return parsers.parse_dd_progress(line)

    def is_out_of_space(self, line: str) -> bool:
        return "No space left on device" in line

    def format(self, partition_device, filesystem, label=None) -> CommandResult:
        self._record("format", partition_device, filesystem)
        if self.format_exit_code:
            return self._result(self.format_exit_code, stderr="mkfs failed")
        return self._result(0)

    def is_system_device(self, partition_device: str) -> bool:
        return partition_device in self.system_devices


def df_output(partition_device: str, total: int, used: int) -> str:
    """Render ``df`` output for a device, in 1K blocks."""
    return (
        "Filesystem     1K-blocks    Used Available Use% Mounted on\n"
        f"{partition_device} {total // 1024} {used // 1024} {(total - used) // 1024} 1% /media/pi/X\n"
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def monitor_config() -> MonitorConfig:
    """Monitor configuration with short polling intervals."""
    return MonitorConfig(
        mount_poll_attempts=3,
        mount_poll_interval_seconds=0.01,
        usage_retry_attempts=3,
        usage_retry_delay_seconds=0.01,
    )


@pytest.fixture
def fast_config(temp_dir: Path, monitor_config: MonitorConfig) -> UsbStationConfig:
    """Station configuration without delays, logging to a temp directory."""
    config = UsbStationConfig(
        commands=CommandsConfig(interrupt_grace_seconds=0.1, terminate_timeout_seconds=0.5),
        monitor=monitor_config,
        transfer=CopyConfig(completion_delay_seconds=0),
        wipe=WipeConfig(completion_delay_seconds=0),
    )
    config.logging.log_directory = temp_dir / "logs"
    return config


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def registry(fake_backend: FakeBackend, monitor_config: MonitorConfig) -> DriveRegistry:
    return DriveRegistry(fake_backend, monitor_config)


@pytest.fixture
def plug_in(fake_backend: FakeBackend, registry: DriveRegistry):
    """Return a helper that plugs in and mounts a drive, returning its snapshot record."""

    def plug(partition_device: str, label: str, size_bytes: int = 8 * 1024**3) -> DriveRecord:
        mount_point = f"/media/pi/{label}"
        fake_backend.mounts[partition_device] = mount_point
        registry.apply_event(DriveMounted(partition_device, mount_point, label, size_bytes=size_bytes))
        record = registry.get_record(partition_device)
        assert record is not None
        return record

    return plug


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
