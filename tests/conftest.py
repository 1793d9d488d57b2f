"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest
from fakes import FakeHost

from winprov.config import AppConfig, load_config
from winprov.downloads import Downloader
from winprov.providers import python_runtime


@pytest.fixture
def config_values(tmp_path: Path) -> dict[str, object]:
    """Return config overrides that keep every host path under *tmp_path*."""
    root = tmp_path / "host"
    return {
        "install_root": str(root / "webapp"),
        "state_dir": str(root / "ProgramData" / "winprov"),
        "templates_dir": str(root / "ProgramData" / "winprov" / "templates"),
        "python": {"executable": str(root / "Python311" / "python.exe")},
        "nssm": {"install_dir": str(root / "nssm")},
        "iis": {
            "site_root": str(root / "inetpub" / "wwwroot"),
            "appcmd_bin": "appcmd.exe",
            "extensions": [
                {
                    "name": "url-rewrite",
                    "url": "https://downloads.example.test/rewrite_amd64_en-US.msi",
                    "marker": str(root / "inetsrv" / "rewrite.dll"),
                },
                {
                    "name": "application-request-routing",
                    "url": "https://downloads.example.test/requestRouter_amd64.msi",
                    "marker": str(root / "ARR" / "requestRouter.dll"),
                },
            ],
        },
    }


@pytest.fixture
def app_config(tmp_path: Path, config_values: dict[str, object]) -> AppConfig:
    """Return an :class:`AppConfig` rooted in the temporary directory."""
    return load_config(tmp_path / "missing.yml", env={}, overrides=config_values)


@pytest.fixture
def fake_host(monkeypatch: pytest.MonkeyPatch, app_config: AppConfig) -> FakeHost:
    """Route child processes and downloads to a :class:`FakeHost`.

    The application's ``requirements.txt`` is deployed into the install root
    up front, the way the application code would be.
    """
    host = FakeHost(app_config)
    monkeypatch.setattr(subprocess, "run", host.run)
    monkeypatch.setattr(
        Downloader,
        "fetch",
        lambda self, url, destination: host.fetch(url, destination),
    )
    paths = {"machine": r"C:\Windows\system32;C:\Program Files\Python311", "user": ""}
    monkeypatch.setattr(python_runtime, "read_registry_path", lambda scope: paths[scope])
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))

    app_config.install_root.mkdir(parents=True, exist_ok=True)
    app_config.requirements_file.write_text("flask==3.0.3\n", encoding="utf-8")
    return host
