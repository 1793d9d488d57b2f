"""NSSM provider for installing the service wrapper and registering services."""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

from ..config import NssmConfig
from ..downloads import Downloader
from ..errors import FilesystemError, InstallError, ServiceOperationError
from ..models import ServiceSpec
from ..process import run_command
from .service_control import ServiceControl

LOGGER = logging.getLogger(__name__)


class NssmError(ServiceOperationError):
    """Raised when nssm operations fail."""


@dataclass(slots=True)
class ServiceRegistration:
    """Outcome of registering a service."""

    name: str
    replaced: bool
    settings_applied: int


@dataclass(slots=True)
class NssmProvider:
    """Install NSSM and manage the services it wraps."""

    config: NssmConfig
    downloader: Downloader
    service_control: ServiceControl

    @property
    def nssm_bin(self) -> str:
        """Return the path of the nssm executable."""
        return str(self.config.executable)

    def is_installed(self) -> bool:
        """Return True when the NSSM target directory is present."""
        return self.config.install_dir.is_dir()

    def ensure_installed(self) -> bool:
        """Download and unpack NSSM unless it is already present."""
        if self.is_installed():
            return False
        with tempfile.TemporaryDirectory(prefix="winprov-nssm-") as tmp:
            staging = Path(tmp)
            archive = self.downloader.fetch(self.config.archive_url, staging / "nssm.zip")
            extract_dir = staging / "extract"
            try:
                with zipfile.ZipFile(archive) as bundle:
                    bundle.extractall(extract_dir)
            except (zipfile.BadZipFile, OSError) as exc:
                raise InstallError(f"Failed to extract NSSM archive {archive}: {exc}") from exc
            source = _locate_subtree(extract_dir, self.config.archive_subdir)
            try:
                shutil.copytree(source, self.config.install_dir)
            except OSError as exc:
                raise FilesystemError(
                    f"Failed to copy NSSM into {self.config.install_dir}: {exc}"
                ) from exc
        LOGGER.debug("Installed NSSM into %s", self.config.install_dir)
        return True

    def register(self, spec: ServiceSpec) -> ServiceRegistration:
        """Install *spec* as a service, replacing any existing registration."""
        replaced = False
        if self.service_control.exists(spec.name):
            self.stop(spec.name)
            self.remove(spec.name)
            replaced = True
        self.install(spec)
        settings = spec.settings()
        for key, value in settings:
            self.set(spec.name, key, value)
        return ServiceRegistration(
            name=spec.name,
            replaced=replaced,
            settings_applied=len(settings),
        )

    def install(self, spec: ServiceSpec) -> subprocess.CompletedProcess[str]:
        """Run ``nssm install`` for *spec*."""
        return self._nssm("install", spec.name, str(spec.executable), *spec.arguments)

    def set(self, name: str, key: str, value: str) -> subprocess.CompletedProcess[str]:
        """Run ``nssm set <name> <key> <value>``."""
        return self._nssm("set", name, key, value)

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop the service; a service that is already stopped is not an error."""
        result = self._nssm("stop", name, check=False)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            LOGGER.debug("nssm stop %s returned %s: %s", name, result.returncode, message)
        return result

    def remove(self, name: str) -> subprocess.CompletedProcess[str]:
        """Run ``nssm remove <name> confirm``."""
        return self._nssm("remove", name, "confirm")

    # ------------------------------------------------------------------
    def _nssm(
        self,
        command: str,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.nssm_bin, command, *args],
            error_cls=NssmError,
            error_prefix=f"nssm {command} {args[0] if args else ''}".rstrip(),
            check=check,
        )


def _locate_subtree(extract_dir: Path, subdir: str) -> Path:
    """Return ``<archive-root>/<subdir>`` from an extracted NSSM release."""
    direct = extract_dir / subdir
    if direct.is_dir():
        return direct
    for child in sorted(extract_dir.iterdir()):
        candidate = child / subdir
        if child.is_dir() and candidate.is_dir():
            return candidate
    raise InstallError(f"NSSM archive does not contain a '{subdir}' directory.")


__all__ = ["NssmError", "NssmProvider", "ServiceRegistration"]
