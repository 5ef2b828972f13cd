"""
USB Station Linux Platform Backend.

Drives removable storage using standard Linux tools:
- devmon or udisksctl monitor for drive events
- udisksctl for mounting
- df, find for usage and listings
- rsync for copies
- dd and mkfs.* for wiping
"""

from usbstation.platform.linux.backend import LinuxBackend
from usbstation.platform.linux.parsers import (
    find_mount_point,
    parse_dd_progress,
    parse_df_output,
    parse_find_line,
    parse_mount_table,
    parse_rsync_progress,
    unescape_octal,
)

__all__ = [
    "LinuxBackend",
    "find_mount_point",
    "parse_dd_progress",
    "parse_df_output",
    "parse_find_line",
    "parse_mount_table",
    "parse_rsync_progress",
    "unescape_octal",
]
