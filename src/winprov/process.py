"""Child-process execution shared by the providers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence

from .errors import ProvisionError

LOGGER = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[ProvisionError],
    error_prefix: str | None = None,
    check: bool = True,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and raise *error_cls* on a missing binary or non-zero exit."""
    command = [str(part) for part in args]
    prefix = error_prefix or " ".join(command[:2])
    LOGGER.debug("Running %s", " ".join(command))
    try:
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{command[0]} not found: {exc}") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["run_command"]
