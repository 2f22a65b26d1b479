"""Exception taxonomy shared by the deployer, controller and watchers."""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class PibootError(Exception):
    """Base class for every error raised by piboot."""


class ConfigurationError(PibootError):
    """Unknown service, missing source definition, bad settings or privileges."""


class FilesystemError(PibootError):
    """A directory or file could not be created, written or read."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class ExternalToolError(PibootError):
    """The container CLI is missing, timed out or exited non-zero."""

    def __init__(self, message: str, command: Optional[list[str]] = None, detail: str = "") -> None:
        super().__init__(message)
        self.command = command or []
        self.detail = detail

    def __str__(self) -> str:
        message = super().__str__()
        return f"{message}: {self.detail}" if self.detail else message


class ControllerError(ExternalToolError):
    """A compose operation against a single project failed."""


class WatchError(PibootError):
    """Event-based file watching is unavailable."""


class LockTimeout(PibootError):
    """A per-service advisory lock could not be obtained in time."""


class DeployError(PibootError):
    """Raised when materializing a service's live files fails."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class SourceMissingError(DeployError, ConfigurationError):
    pass


class DirectoryCreateError(DeployError, FilesystemError):
    pass


class FileWriteError(DeployError, FilesystemError):
    pass
