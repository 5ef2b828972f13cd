"""
USB Station Core - Backend service layer.

Contains the task engine, job execution, configuration, data models
and the station entry point.
"""

from usbstation.core.config import UsbStationConfig
from usbstation.core.job import Job, JobResult, JobRunner, JobStatus
from usbstation.core.logging import get_logger, setup_logging
from usbstation.core.models import DriveRecord, FileEntry, OperationState
from usbstation.core.task import TaskCancelledException, TaskHandle, TaskState
from usbstation.core.session import Station

__all__ = [
    "DriveRecord",
    "FileEntry",
    "Job",
    "JobResult",
    "JobRunner",
    "JobStatus",
    "OperationState",
    "Station",
    "TaskCancelledException",
    "TaskHandle",
    "TaskState",
    "UsbStationConfig",
    "get_logger",
    "setup_logging",
]
