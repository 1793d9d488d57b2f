"""Helpers for ensuring the Python runtime is installed on the host."""
from __future__ import annotations

import logging
import os
import tempfile
import urllib.parse
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..config import PythonConfig
from ..downloads import Downloader
from ..errors import InstallError
from ..process import run_command

LOGGER = logging.getLogger(__name__)

MACHINE_ENVIRONMENT_KEY = r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"
USER_ENVIRONMENT_KEY = "Environment"

PathReader = Callable[[str], str]


class PythonRuntimeError(InstallError):
    """Raised when Python runtime management fails."""


@dataclass(slots=True)
class PythonVersionInfo:
    """Parsed interpreter version details."""

    raw: str
    version: Version


@dataclass(slots=True)
class RuntimeEnsureResult:
    """Outcome of ``ensure_installed``."""

    executable: Path
    installation_performed: bool
    path_refreshed: bool
    version: PythonVersionInfo | None = None


def read_registry_path(scope: str) -> str:
    """Return the persisted ``Path`` variable for ``machine`` or ``user`` scope."""
    try:
        import winreg
    except ImportError as exc:
        raise PythonRuntimeError(
            "The Windows registry is not available on this platform."
        ) from exc

    if scope == "machine":
        root, subkey = winreg.HKEY_LOCAL_MACHINE, MACHINE_ENVIRONMENT_KEY
    else:
        root, subkey = winreg.HKEY_CURRENT_USER, USER_ENVIRONMENT_KEY
    try:
        with winreg.OpenKey(root, subkey) as key:
            value, _ = winreg.QueryValueEx(key, "Path")
    except FileNotFoundError:
        return ""
    return os.path.expandvars(str(value))


@dataclass(slots=True)
class PythonRuntimeManager:
    """Install the Python runtime from the vendor installer when it is absent."""

    config: PythonConfig
    downloader: Downloader
    path_reader: PathReader | None = None

    def is_installed(self) -> bool:
        """Return True when the interpreter marker path exists."""
        return self.config.executable.exists()

    def detect_version(self) -> PythonVersionInfo | None:
        """Return the version reported by the installed interpreter."""
        if not self.is_installed():
            return None
        result = run_command(
            [str(self.config.executable), "--version"],
            error_cls=PythonRuntimeError,
            check=False,
        )
        output = (result.stdout or result.stderr or "").strip()
        if result.returncode != 0 or not output:
            return None
        try:
            version = Version(output.split()[-1])
        except InvalidVersion:
            return None
        return PythonVersionInfo(raw=output, version=version)

    def verify_version(self) -> PythonVersionInfo:
        """Return the installed version, failing unless it matches the configured one."""
        try:
            expected = Version(self.config.version)
        except InvalidVersion as exc:
            raise PythonRuntimeError(
                f"Configured Python version {self.config.version!r} is not a valid version."
            ) from exc
        info = self.detect_version()
        if info is None:
            raise PythonRuntimeError(
                f"Could not determine the version of {self.config.executable}."
            )
        if info.version != expected:
            raise PythonRuntimeError(
                f"Installed interpreter reports {info.version}, expected {expected}."
            )
        return info

    def ensure_installed(self) -> RuntimeEnsureResult:
        """Download and run the installer unless the interpreter is present."""
        executable = self.config.executable
        if self.is_installed():
            return RuntimeEnsureResult(
                executable=executable,
                installation_performed=False,
                path_refreshed=False,
            )

        with tempfile.TemporaryDirectory(prefix="winprov-python-") as tmp:
            installer = self.downloader.fetch(
                self.config.installer_url,
                Path(tmp) / _installer_name(self.config.installer_url),
            )
            run_command(
                [str(installer), *self.config.install_args],
                error_cls=PythonRuntimeError,
                error_prefix=f"Python {self.config.version} installer",
            )

        if not executable.exists():
            raise PythonRuntimeError(
                f"Python installer completed but {executable} could not be located."
            )
        detected = self.verify_version()
        self.refresh_path()
        LOGGER.debug("Python %s installed at %s", self.config.version, executable)
        return RuntimeEnsureResult(
            executable=executable,
            installation_performed=True,
            path_refreshed=True,
            version=detected,
        )

    def refresh_path(self, environ: MutableMapping[str, str] | None = None) -> str:
        """Reload ``PATH`` from the machine and user settings into *environ*."""
        reader = self.path_reader or read_registry_path
        machine = reader("machine")
        user = reader("user")
        combined = ";".join(part for part in (machine, user) if part)
        target = os.environ if environ is None else environ
        target["PATH"] = combined
        return combined


def _installer_name(url: str) -> str:
    name = Path(urllib.parse.urlparse(url).path).name
    return name or "python-installer.exe"


__all__ = [
    "PythonRuntimeError",
    "PythonRuntimeManager",
    "PythonVersionInfo",
    "RuntimeEnsureResult",
    "read_registry_path",
]
