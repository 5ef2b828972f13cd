"""
USB Station configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path.home() / ".usbstation" / "config.json"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = False
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: Path.home() / ".usbstation" / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class CommandsConfig(BaseModel):
    """How external tools are launched and stopped."""

    privilege_prefix: list[str] = Field(default_factory=lambda: ["sudo"])
    monitor_prefix: list[str] = Field(default_factory=lambda: ["sudo", "-u", "pi"])
    interrupt_grace_seconds: float = Field(default=0.2, ge=0)
    terminate_timeout_seconds: float = Field(default=2.0, ge=0)
    command_timeout_seconds: float = Field(default=300.0, gt=0)


class MonitorConfig(BaseModel):
    """Configuration for drive monitoring."""

    backend: Literal["devmon", "udisksctl"] = "devmon"
    mount_table: Path = Path("/etc/mtab")
    mount_poll_attempts: int = Field(default=20, ge=1)
    mount_poll_interval_seconds: float = Field(default=0.25, ge=0)
    usage_retry_attempts: int = Field(default=3, ge=1)
    usage_retry_delay_seconds: float = Field(default=2.0, ge=0)


class CopyConfig(BaseModel):
    """Configuration for multi-destination copies."""

    rsync_options: list[str] = Field(default_factory=lambda: ["-rIlptv", "--info=progress2"])
    unmount_after_copy: bool = True
    abort_on_first_failure: bool = False
    completion_delay_seconds: float = Field(default=0.2, ge=0)


class WipeConfig(BaseModel):
    """Configuration for the wipe pipeline."""

    filesystem: Literal["vfat", "exfat", "ext4"] = "vfat"
    label: str | None = None
    block_size: int = Field(default=4096, ge=512)
    protect_system_disk: bool = True
    completion_delay_seconds: float = Field(default=0.2, ge=0)


class UsbStationConfig(BaseModel):
    """Main USB Station configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    transfer: CopyConfig = Field(default_factory=CopyConfig)
    wipe: WipeConfig = Field(default_factory=WipeConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> UsbStationConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)


def get_default_config() -> UsbStationConfig:
    """Get the default configuration."""
    return UsbStationConfig()


def load_config(config_path: Path | None = None) -> UsbStationConfig:
    """Load or create configuration."""
    return UsbStationConfig.load(config_path)
