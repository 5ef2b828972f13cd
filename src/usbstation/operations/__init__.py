"""
USB Station operations.

Long-running, cancellable jobs over the drives in the registry.
"""

from usbstation.operations.copy import CopyError, CopyJob, CopyReport
from usbstation.operations.wipe import WipeError, WipeJob

__all__ = ["CopyError", "CopyJob", "CopyReport", "WipeError", "WipeJob"]
