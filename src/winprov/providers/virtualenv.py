"""Virtual environment creation and dependency installation."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..errors import FilesystemError, InstallError
from ..models import venv_python
from ..process import run_command

LOGGER = logging.getLogger(__name__)


class VirtualenvError(InstallError):
    """Raised when creating the environment or installing packages fails."""


@dataclass(slots=True)
class VirtualenvProvider:
    """Manage the application's virtual environment under the install root."""

    venv_dir: Path

    @property
    def python(self) -> Path:
        """Return the interpreter inside the environment."""
        return venv_python(self.venv_dir)

    def create(self, base_python: Path) -> bool:
        """Create the environment with *base_python*. Returns True when newly created.

        The command is always executed; an environment that already exists
        counts as success even if ``venv`` reports an error for it.
        """
        existed = self.python.exists()
        result = run_command(
            [str(base_python), "-m", "venv", str(self.venv_dir)],
            error_cls=VirtualenvError,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            if not existed:
                raise VirtualenvError(
                    f"python -m venv {self.venv_dir} failed (exit {result.returncode}): {message}"
                )
            LOGGER.debug(
                "venv reported exit %s for existing environment: %s",
                result.returncode,
                message,
            )
        return not existed

    def install_requirements(self, requirements: Path) -> subprocess.CompletedProcess[str]:
        """Install the packages listed in *requirements* into the environment."""
        if not requirements.is_file():
            raise FilesystemError(f"Requirements manifest not found: {requirements}")
        return run_command(
            [str(self.python), "-m", "pip", "install", "-r", str(requirements)],
            error_cls=VirtualenvError,
            error_prefix="pip install",
        )


__all__ = ["VirtualenvError", "VirtualenvProvider"]
