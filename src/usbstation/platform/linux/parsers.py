"""
Linux output parsers.

Parsers for the mount table, df, find, rsync and dd output.
"""

from __future__ import annotations

import re
from pathlib import Path

from usbstation.core.models import FileEntry

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")
_DD_PROGRESS = re.compile(r"^(\d+) bytes")


def unescape_octal(value: str) -> str:
    """Decode mount-table octal escapes, e.g. ``\\040`` -> space."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


def parse_mount_table(text: str) -> dict[str, str]:
    """Parse ``/etc/mtab`` style text into a device -> mount point mapping."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].startswith("/dev/"):
            result[unescape_octal(parts[0])] = unescape_octal(parts[1])
    return result


def find_mount_point(mount_table: str | Path, partition_device: str) -> str | None:
    """
    Find the mount point of ``partition_device``.

    ``mount_table`` is either the table's text or the path of the file to
    read. An unreadable table is treated as empty.
    """
    if isinstance(mount_table, Path):
        try:
            text = mount_table.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
    else:
        text = mount_table
    return parse_mount_table(text).get(partition_device)


def parse_df_output(output: str, partition_device: str) -> tuple[int, int] | None:
    """
    Parse ``df DEVICE`` output into ``(total_bytes, used_bytes)``.

    Expects exactly a header and one data row for ``partition_device``, in
    1K blocks. Returns None for any other shape, including df reporting a
    different filesystem while the drive is still being mounted.
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) != 2:
        return None

    parts = lines[1].split()
    if len(parts) < 3 or parts[0] != partition_device:
        return None

    try:
        return int(parts[1]) * 1024, int(parts[2]) * 1024  # df uses 1K blocks
    except ValueError:
        return None


def parse_find_line(line: str) -> FileEntry | None:
    """Parse one ``size<TAB>relative path`` line from ``find -printf``."""
    size_text, sep, path = line.partition("\t")
    if not sep or not path:
        return None
    try:
        return FileEntry(path=path, size_bytes=int(size_text))
    except ValueError:
        return None


def parse_rsync_progress(line: str) -> int | None:
    """
    Extract the overall percentage from an ``rsync --info=progress2`` line.

    Lines look like ``  1,234,567  42%  10.00MB/s  0:00:12 (xfr#3, to-chk=5/9)``.
    """
    parts = line.split()
    if len(parts) < 2 or not parts[1].endswith("%"):
        return None
    try:
        percent = int(parts[1][:-1])
    except ValueError:
        return None
    if 0 <= percent <= 100:
        return percent
    return None


def parse_dd_progress(line: str) -> int | None:
    """Extract the byte count from a ``dd status=progress`` line."""
    if "records in" in line or "records out" in line:
        return None
    match = _DD_PROGRESS.match(line.strip())
    if match is None:
        return None
    return int(match.group(1))
