"""IIS provider for the reverse proxy role, extensions and site configuration."""
from __future__ import annotations

import subprocess
import tempfile
import urllib.parse
from dataclasses import dataclass
from pathlib import Path

from ..config import IISConfig, IISExtensionConfig
from ..downloads import Downloader
from ..errors import FilesystemError, InstallError
from ..models import ReverseProxyRule
from ..process import run_command
from ..templates import TemplateEngine
from .service_control import ServiceControl

# msiexec: 3010 means success with a reboot required.
MSI_SUCCESS_CODES = {0, 3010}


class IISError(InstallError):
    """Raised when IIS operations fail."""


@dataclass(slots=True)
class IISSiteResult:
    """Outcome of writing the default site's configuration."""

    path: Path
    changed: bool
    proxy: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class IISProvider:
    """Install IIS features and render the reverse proxy configuration."""

    config: IISConfig
    templates: TemplateEngine
    downloader: Downloader
    service_control: ServiceControl
    powershell_bin: str = "powershell"
    msiexec_bin: str = "msiexec"

    def missing_features(self) -> list[str]:
        """Return the configured Windows features that are not installed."""
        if not self.config.features:
            return []
        names = ",".join(self.config.features)
        result = self._powershell(
            f"Get-WindowsFeature -Name {names} "
            "| Where-Object { -not $_.Installed } "
            "| ForEach-Object { $_.Name }"
        )
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def ensure_features(self) -> list[str]:
        """Install missing features with management tools. Returns what was installed."""
        missing = self.missing_features()
        if missing:
            self._powershell(
                f"Install-WindowsFeature -Name {','.join(missing)} -IncludeManagementTools"
            )
        return missing

    def ensure_extension(self, extension: IISExtensionConfig) -> bool:
        """Install *extension* from its MSI unless its marker exists."""
        if extension.marker.exists():
            return False
        with tempfile.TemporaryDirectory(prefix=f"winprov-{extension.name}-") as tmp:
            package = self.downloader.fetch(extension.url, Path(tmp) / _package_name(extension))
            command = [self.msiexec_bin, "/i", str(package), "/quiet", "/norestart"]
            result = run_command(command, error_cls=IISError, check=False)
            if result.returncode not in MSI_SUCCESS_CODES:
                message = (result.stderr or result.stdout or "no output").strip()
                raise IISError(
                    f"msiexec {extension.name} failed (exit {result.returncode}): {message}"
                )
        return True

    def ensure_extensions(self) -> list[str]:
        """Install every configured extension that is absent. Returns installed names."""
        return [
            extension.name
            for extension in self.config.extensions
            if self.ensure_extension(extension)
        ]

    def render_site(self, rule: ReverseProxyRule) -> IISSiteResult:
        """Write the default site's ``web.config`` and enable proxying."""
        destination = self.config.web_config
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(f"Cannot create site root {destination.parent}: {exc}") from exc
        changed = self.templates.render_to_path(
            "iis/web.config.j2",
            destination,
            rule.template_context(),
        )
        proxy = self.enable_proxy() if self.config.enable_proxy else None
        return IISSiteResult(path=destination, changed=changed, proxy=proxy)

    def enable_proxy(self) -> subprocess.CompletedProcess[str]:
        """Turn on Application Request Routing's proxy at the server level."""
        return run_command(
            [
                self.config.appcmd_bin,
                "set",
                "config",
                "-section:system.webServer/proxy",
                "/enabled:true",
                "/commit:apphost",
            ],
            error_cls=IISError,
            error_prefix="appcmd set config proxy",
        )

    def ensure_running(self) -> bool:
        """Start the IIS host service unless it is running. Returns True when started."""
        return self.service_control.ensure_running(self.config.service_name)

    # ------------------------------------------------------------------
    def _powershell(self, script: str) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.powershell_bin, "-NoProfile", "-NonInteractive", "-Command", script],
            error_cls=IISError,
            error_prefix=f"{self.powershell_bin} {script.split()[0]}",
        )


def _package_name(extension: IISExtensionConfig) -> str:
    name = Path(urllib.parse.urlparse(extension.url).path).name
    return name or f"{extension.name}.msi"


__all__ = ["IISError", "IISProvider", "IISSiteResult", "MSI_SUCCESS_CODES"]
