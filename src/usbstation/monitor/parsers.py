"""
Drive monitor output parsers.

Stateful line consumers for the two supported monitor tools. Each parser
is fed one stdout line at a time and emits drive lifecycle events once a
record has been read completely. Neither tool marks the end of a record,
so a record counts as complete once every required field has been seen.

Unexpected lines are ignored; the next record start resynchronises the
parser. Lines of two records interleaved within one record cannot be
told apart and are not handled.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from usbstation.core.logging import get_logger
from usbstation.core.models import (
    DriveAdded,
    DriveEvent,
    DriveMounted,
    DriveRemoved,
    DriveUnmounted,
)

logger = get_logger(__name__)

EventCallback = Callable[[DriveEvent], None]
MountLookup = Callable[[str], "str | None"]


class MonitorParser:
    """Base class for monitor output parsers."""

    def __init__(self, emit: EventCallback, lookup_mount_point: MountLookup) -> None:
        self.emit = emit
        self.lookup_mount_point = lookup_mount_point

    def consume(self, line: str) -> None:
        raise NotImplementedError

    def __call__(self, line: str) -> None:
        self.consume(line)


class DevmonParser(MonitorParser):
    """
    Parser for udevil ``devmon`` output.

    A record looks like::

        device: [/dev/sdb1]
            systeminternal: [0]
            usage:          [filesystem]
            type:           [vfat]
            label:          [DATA]
            ismounted:      [1]
            hasmedia:       [1]

    and a removal like ``removed:   /org/freedesktop/UDisks/devices/sdb1``.
    devmon does not print a mount line for drives already mounted when it
    starts, so mount points always come from the mount table.
    """

    REQUIRED_FIELDS = frozenset({"usage", "label", "ismounted", "hasmedia"})

    _REMOVED = re.compile(r"removed: (.*)")
    _FIELD = re.compile(r"(    )?(.*): *\[(.*)\]")

    def __init__(self, emit: EventCallback, lookup_mount_point: MountLookup) -> None:
        super().__init__(emit, lookup_mount_point)
        self.partition_device: str | None = None
        self.fields: dict[str, str] = {}

    @property
    def fields_seen(self) -> int:
        return len(self.fields)

    def reset(self) -> None:
        self.partition_device = None
        self.fields = {}

    def consume(self, line: str) -> None:
        removed = self._REMOVED.fullmatch(line.strip())
        if removed is not None:
            node = removed.group(1).strip()
            self.reset()
            self.emit(DriveRemoved("/dev/" + node.rsplit("/", 1)[-1]))
            return

        match = self._FIELD.fullmatch(line.rstrip())
        if match is None:
            return

        key = match.group(2).strip()
        value = match.group(3)

        if key == "device":
            self.partition_device = value
            self.fields = {}
            return

        if self.partition_device is None or key not in self.REQUIRED_FIELDS:
            return

        self.fields[key] = value
        if self.fields_seen == len(self.REQUIRED_FIELDS):
            self._flush()

    def _flush(self) -> None:
        partition_device = self.partition_device
        fields = self.fields
        self.reset()
        assert partition_device is not None

        if fields["usage"] != "filesystem" or fields["hasmedia"] != "1":
            self.emit(DriveRemoved(partition_device))
        elif fields["ismounted"] == "1":
            mount_point = self.lookup_mount_point(partition_device)
            if mount_point is None:
                logger.warning("Mounted drive missing from mount table", partition_device=partition_device)
                return
            self.emit(DriveMounted(partition_device, mount_point, fields["label"]))
        else:
            self.emit(DriveUnmounted(partition_device))


class UDisksCtlParser(MonitorParser):
    """
    Parser for ``udisksctl monitor`` output.

    Records start with an unindented line naming a UDisks2 block device,
    e.g. ``10:15:01.123: /org/freedesktop/UDisks2/block_devices/sdb1: Added``
    followed by indented interface properties. Only partitions are tracked;
    raw devices such as ``sdb`` are ignored.

    A "Properties Changed" record only carries ``MountPoints``. Such a
    partial record is flushed when the next record starts, keeping the
    label, size and port the registry already knows.
    """

    REQUIRED_FIELDS = frozenset({"label", "mount_point", "size", "port"})

    _DEVICE = re.compile(r"/org/freedesktop/UDisks2/block_devices/(sd[a-z]+)(\d*)")
    _PORT = re.compile(r"\.usb-usb-0:1\.(\d+)")

    def __init__(self, emit: EventCallback, lookup_mount_point: MountLookup) -> None:
        super().__init__(emit, lookup_mount_point)
        self.partition_device: str | None = None
        self.fields: dict[str, str | int] = {}

    @property
    def fields_seen(self) -> int:
        return len(self.fields)

    def reset(self) -> None:
        self.partition_device = None
        self.fields = {}

    @staticmethod
    def _field_value(line: str) -> str:
        return line.split(":", 1)[1].strip()

    def consume(self, line: str) -> None:
        if line and not line[0].isspace():
            self._start_record(line)

        if self.partition_device is None:
            return

        if line.startswith("    IdLabel:"):
            self.fields["label"] = self._field_value(line)
        elif line.startswith("    MountPoints:") or line.startswith("  MountPoints:"):
            self.fields["mount_point"] = self._field_value(line)
        elif line.startswith("    Size:"):
            try:
                self.fields["size"] = int(self._field_value(line))
            except ValueError:
                logger.debug("Unparseable size", line=line)
        port = self._PORT.search(line)
        if port is not None:
            self.fields["port"] = int(port.group(1))

        if self.fields_seen == len(self.REQUIRED_FIELDS):
            self._flush()

    def _start_record(self, line: str) -> None:
        if self.partition_device is not None and self.fields_seen > 0:
            self._flush()
        self.reset()

        match = self._DEVICE.search(line)
        if match is None or not match.group(2):
            return

        partition_device = f"/dev/{match.group(1)}{match.group(2)}"
        if ": Removed " in line or line.rstrip().endswith(": Removed"):
            self.emit(DriveRemoved(partition_device))
            return

        if ": Added " in line or line.rstrip().endswith(": Added"):
            self.emit(DriveAdded(partition_device))
        self.partition_device = partition_device

    def _flush(self) -> None:
        partition_device = self.partition_device
        fields = self.fields
        self.reset()
        assert partition_device is not None

        label = fields.get("label")
        size = fields.get("size")
        port = fields.get("port")
        reported = str(fields.get("mount_point", ""))
        mount_point = (self.lookup_mount_point(partition_device) or reported) if reported else ""

        if mount_point:
            self.emit(
                DriveMounted(
                    partition_device,
                    mount_point,
                    label=str(label) if label is not None else None,
                    size_bytes=int(size) if size is not None else None,
                    port=int(port) if port is not None else None,
                )
            )
        else:
            self.emit(
                DriveUnmounted(
                    partition_device,
                    size_bytes=int(size) if size is not None else None,
                    port=int(port) if port is not None else None,
                )
            )


PARSERS: dict[str, type[MonitorParser]] = {
    "devmon": DevmonParser,
    "udisksctl": UDisksCtlParser,
}
