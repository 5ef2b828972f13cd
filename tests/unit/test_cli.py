"""
Tests for usbstation.cli.main module.
"""

import json
from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from usbstation import __version__
from usbstation.cli.main import cli, format_size
from usbstation.core.job import JobResult
from usbstation.core.models import DriveRecord, FileEntry, OperationState
from usbstation.core.task import TaskHandle

SOURCE = DriveRecord("/dev/sdb1", plugged_in=True, mounted=True, mount_point="/media/pi/SRC", label="SRC", port=2)
DEST = DriveRecord("/dev/sdc1", plugged_in=True, mounted=True, mount_point="/media/pi/DST", label="DST", port=3)


@pytest.fixture
def station() -> Generator[MagicMock, None, None]:
    with patch("usbstation.cli.main.Station") as station_class:
        instance = station_class.return_value
        instance.drives = (SOURCE, DEST)
        instance.wait_for_drive.side_effect = lambda device, timeout=None: {
            "/dev/sdb1": SOURCE,
            "/dev/sdc1": DEST,
        }.get(device)
        instance.wait.return_value = OperationState.COMPLETED
        instance.get_result.return_value = JobResult(success=True)
        yield instance


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestFormatSize:
    """Tests for size formatting."""

    def test_unknown(self) -> None:
        assert format_size(-1) == "?"

    def test_known(self) -> None:
        assert format_size(0) == "0 Bytes"
        assert format_size(2_000_000) == "2.0 MB"


class TestCli:
    """Tests for the command-line interface."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_drives_json(self, runner: CliRunner, station: MagicMock) -> None:
        result = runner.invoke(cli, ["--json", "drives", "--settle", "0"], obj={})

        assert result.exit_code == 0
        drives = json.loads(result.output)
        assert [d["partition_device"] for d in drives] == ["/dev/sdb1", "/dev/sdc1"]
        station.open.assert_called_once()
        station.close.assert_called_once()

    def test_verbose_enables_debug_logging(self, runner: CliRunner) -> None:
        with patch("usbstation.cli.main.Station") as station_class:
            station_class.return_value.drives = ()
            result = runner.invoke(cli, ["--verbose", "drives", "--settle", "0"], obj={})

        assert result.exit_code == 0
        config = station_class.call_args.kwargs["config"]
        assert config.logging.level == "DEBUG"

    def test_drives_table(self, runner: CliRunner, station: MagicMock) -> None:
        result = runner.invoke(cli, ["drives", "--settle", "0"], obj={})
        assert result.exit_code == 0
        assert "USB Drives" in result.output

    def test_no_drives(self, runner: CliRunner, station: MagicMock) -> None:
        station.drives = ()
        result = runner.invoke(cli, ["drives", "--settle", "0"], obj={})
        assert result.exit_code == 0
        assert "No USB drives found" in result.output

    def test_ls_json(self, runner: CliRunner, station: MagicMock) -> None:
        station.get_file_listing.return_value = TaskHandle.completed(
            [FileEntry("a.txt", 10), FileEntry("docs/b.pdf", 2048)]
        )

        result = runner.invoke(cli, ["--json", "ls", "/dev/sdb1", "--settle", "0"], obj={})

        assert result.exit_code == 0
        assert json.loads(result.output) == [
            {"path": "a.txt", "size_bytes": 10},
            {"path": "docs/b.pdf", "size_bytes": 2048},
        ]
        station.get_file_listing.assert_called_once_with(SOURCE)

    def test_ls_unknown_drive(self, runner: CliRunner, station: MagicMock) -> None:
        result = runner.invoke(cli, ["ls", "/dev/sdz1", "--settle", "0"], obj={})
        assert result.exit_code == 1
        assert "Drive not found" in result.output

    def test_copy(self, runner: CliRunner, station: MagicMock) -> None:
        station.submit_copy.return_value = "job-1"

        result = runner.invoke(cli, ["copy", "/dev/sdb1", "/dev/sdc1", "--settle", "0"], obj={})

        assert result.exit_code == 0
        assert "Completed" in result.output
        args, kwargs = station.submit_copy.call_args
        assert args == (SOURCE, [DEST])
        assert callable(kwargs["on_progress"])

    def test_copy_error(self, runner: CliRunner, station: MagicMock) -> None:
        station.submit_copy.return_value = "job-1"
        station.wait.return_value = OperationState.ERROR
        station.get_result.return_value = JobResult(success=False, error="rsync exited with code 23")

        result = runner.invoke(cli, ["copy", "/dev/sdb1", "/dev/sdc1", "--settle", "0"], obj={})

        assert result.exit_code == 1
        assert "rsync exited with code 23" in result.output

    def test_wipe_requires_confirmation(self, runner: CliRunner, station: MagicMock) -> None:
        result = runner.invoke(cli, ["wipe", "/dev/sdc1", "--settle", "0"], input="n\n", obj={})

        assert result.exit_code == 1
        assert "Wipe aborted" in result.output
        station.submit_wipe.assert_not_called()

    def test_wipe_quick_cancelled(self, runner: CliRunner, station: MagicMock) -> None:
        station.submit_wipe.return_value = "job-2"
        station.wait.return_value = OperationState.CANCELED

        result = runner.invoke(cli, ["wipe", "/dev/sdc1", "--quick", "--yes", "--settle", "0"], obj={})

        assert result.exit_code == 130
        args, kwargs = station.submit_wipe.call_args
        assert args == (DEST,)
        assert kwargs["quick"] is True
