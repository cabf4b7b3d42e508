"""Errors raised or reported by the adapter core."""

from pathlib import Path


class AdapterError(Exception):
    """Base class for adapter errors."""


class ConfigError(AdapterError):
    """Raised when no usable configuration snapshot can be produced."""


class LoadError(AdapterError):
    """Raised when the test framework or a required module cannot be loaded."""


class EnumerationError(AdapterError):
    """A single test file failed to enumerate."""

    def __init__(self, file: Path, message: str) -> None:
        super().__init__(f"Failed to load tests from {file}: {message}")
        self.file = file
        self.message = message


class DebugStartError(AdapterError):
    """Raised when the debugging subsystem declines to start a session."""


class BusyError(AdapterError):
    """Raised when a load or run is requested while another one is in flight."""
