"""Windows Service Control Manager access via ``sc.exe``."""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass

from ..errors import ServiceOperationError
from ..process import run_command

# sc.exe exits with the Win32 error code; 1060 means the service does not exist.
ERROR_SERVICE_DOES_NOT_EXIST = 1060

_STATE_PATTERN = re.compile(r"^\s*STATE\s*:\s*\d+\s+(\w+)", re.MULTILINE)


class ServiceControlError(ServiceOperationError):
    """Raised when ``sc.exe`` operations fail."""


@dataclass(slots=True)
class ServiceControl:
    """Query and start services registered with the OS."""

    sc_bin: str = "sc.exe"

    def query_state(self, name: str) -> str | None:
        """Return the state of *name* (e.g. ``RUNNING``), or None if it does not exist."""
        result = run_command(
            [self.sc_bin, "query", name],
            error_cls=ServiceControlError,
            check=False,
        )
        if result.returncode == ERROR_SERVICE_DOES_NOT_EXIST:
            return None
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ServiceControlError(
                f"{self.sc_bin} query {name} failed (exit {result.returncode}): {message}"
            )
        match = _STATE_PATTERN.search(result.stdout or "")
        if match is None:
            raise ServiceControlError(
                f"Cannot determine the state of {name} from {self.sc_bin} query output."
            )
        return match.group(1).upper()

    def exists(self, name: str) -> bool:
        """Return True when a service called *name* is registered."""
        return self.query_state(name) is not None

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        """Start the service *name*."""
        return run_command(
            [self.sc_bin, "start", name],
            error_cls=ServiceControlError,
            error_prefix=f"{self.sc_bin} start {name}",
        )

    def ensure_running(self, name: str) -> bool:
        """Start *name* unless it is already running. Returns True when started."""
        state = self.query_state(name)
        if state is None:
            raise ServiceControlError(f"Service {name} is not installed.")
        if state in {"RUNNING", "START_PENDING"}:
            return False
        self.start(name)
        return True


__all__ = ["ERROR_SERVICE_DOES_NOT_EXIST", "ServiceControl", "ServiceControlError"]
