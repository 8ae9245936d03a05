"""
Exception types for Stream Worker.
"""

from typing import Optional


class StreamWorkerError(Exception):
    """Base class for all worker errors."""


class ConfigError(StreamWorkerError, ValueError):
    """Raised when the configuration file is missing fields or malformed."""


class ProcessError(StreamWorkerError):
    """A pipeline subprocess failed to spawn or died with an error."""

    def __init__(self, role: str, message: str, returncode: Optional[int] = None):
        super().__init__(f"{role}: {message}")
        self.role = role
        self.returncode = returncode
