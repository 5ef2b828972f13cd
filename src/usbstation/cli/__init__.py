"""
USB Station CLI Module.

Provides command-line interface for USB Station operations.
"""

from usbstation.cli.main import cli, main

__all__ = ["cli", "main"]
