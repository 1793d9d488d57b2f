"""Error hierarchy shared by the provisioner and its providers."""
from __future__ import annotations

from .exit_codes import ExitCode


class ProvisionError(RuntimeError):
    """Base class for failures that halt a provisioning run."""

    exit_code: ExitCode = ExitCode.PROVIDER


class DownloadError(ProvisionError):
    """Raised when fetching an artifact over the network fails."""

    exit_code = ExitCode.ENVIRONMENT


class FilesystemError(ProvisionError):
    """Raised when a directory or file cannot be created or read."""

    exit_code = ExitCode.ENVIRONMENT


class InstallError(ProvisionError):
    """Raised when an installer exits with a non-zero status."""


class ServiceOperationError(ProvisionError):
    """Raised when the service manager or service control fails."""


__all__ = [
    "DownloadError",
    "FilesystemError",
    "InstallError",
    "ProvisionError",
    "ServiceOperationError",
]
