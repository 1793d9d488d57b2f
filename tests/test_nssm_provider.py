"""Tests for the NSSM provider."""
from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from fakes import FakeHost

from winprov.downloads import Downloader
from winprov.errors import FilesystemError, InstallError
from winprov.models import build_plan
from winprov.providers.nssm import NssmError, NssmProvider
from winprov.providers.service_control import ServiceControl


def _provider(host: FakeHost) -> NssmProvider:
    return NssmProvider(
        config=host.config.nssm,
        downloader=Downloader(),
        service_control=ServiceControl(sc_bin=host.config.bins.sc),
    )


def test_ensure_installed_copies_win64_subtree(fake_host: FakeHost) -> None:
    """The 64-bit binaries are copied into the install directory."""
    provider = _provider(fake_host)

    assert provider.ensure_installed() is True

    install_dir = fake_host.config.nssm.install_dir
    assert sorted(path.name for path in install_dir.iterdir()) == ["nssm.exe"]
    assert (install_dir / "nssm.exe").read_bytes() == b"MZ-win64"
    assert fake_host.downloads == [fake_host.config.nssm.archive_url]


def test_ensure_installed_skips_existing_directory(fake_host: FakeHost) -> None:
    """An existing install directory is trusted and nothing is downloaded."""
    fake_host.config.nssm.install_dir.mkdir(parents=True)

    assert _provider(fake_host).ensure_installed() is False
    assert fake_host.downloads == []


def test_corrupt_archive_raises_install_error(
    monkeypatch: pytest.MonkeyPatch,
    fake_host: FakeHost,
) -> None:
    """A payload that is not a zip archive fails the install."""

    def broken_fetch(url: str, destination: Path) -> Path:
        destination.write_bytes(b"<html>maintenance</html>")
        return destination

    monkeypatch.setattr(fake_host, "fetch", broken_fetch)

    with pytest.raises(InstallError, match="Failed to extract NSSM archive"):
        _provider(fake_host).ensure_installed()
    assert not fake_host.config.nssm.install_dir.exists()


def test_archive_without_subtree_raises(
    monkeypatch: pytest.MonkeyPatch,
    fake_host: FakeHost,
) -> None:
    """Archives lacking the expected architecture directory are rejected."""

    def fetch_win32_only(url: str, destination: Path) -> Path:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as bundle:
            bundle.writestr("nssm-2.24/win32/nssm.exe", b"MZ")
        destination.write_bytes(buffer.getvalue())
        return destination

    monkeypatch.setattr(fake_host, "fetch", fetch_win32_only)

    with pytest.raises(InstallError, match="'win64'"):
        _provider(fake_host).ensure_installed()


def test_copy_failure_raises_filesystem_error(
    monkeypatch: pytest.MonkeyPatch,
    fake_host: FakeHost,
) -> None:
    """An unwritable install directory is a filesystem failure."""

    def fail_copytree(*args: object, **kwargs: object) -> None:
        raise PermissionError("Access is denied")

    monkeypatch.setattr("winprov.providers.nssm.shutil.copytree", fail_copytree)

    with pytest.raises(FilesystemError, match="Access is denied"):
        _provider(fake_host).ensure_installed()


def test_register_new_service_installs_and_applies_settings(fake_host: FakeHost) -> None:
    """A new service is installed without stop/remove and all settings are applied."""
    spec = build_plan(fake_host.config).service

    registration = _provider(fake_host).register(spec)

    assert registration.replaced is False
    assert registration.settings_applied == len(spec.settings())
    actions = [command[1] for command in fake_host.calls(fake_host.nssm_bin)]
    assert actions[0] == "install"
    assert set(actions[1:]) == {"set"}
    assert fake_host.service_settings[spec.name]["DisplayName"] == "Python Web Application"


def test_register_replaces_existing_service(fake_host: FakeHost) -> None:
    """An existing registration is stopped and removed before reinstalling."""
    spec = build_plan(fake_host.config).service
    fake_host.services[spec.name] = "RUNNING"
    fake_host.service_settings[spec.name] = {}

    registration = _provider(fake_host).register(spec)

    assert registration.replaced is True
    nssm_calls = fake_host.calls(fake_host.nssm_bin)
    assert nssm_calls[0] == [fake_host.nssm_bin, "stop", spec.name]
    assert nssm_calls[1] == [fake_host.nssm_bin, "remove", spec.name, "confirm"]
    assert nssm_calls[2][:3] == [fake_host.nssm_bin, "install", spec.name]


def test_stop_failure_is_tolerated(fake_host: FakeHost) -> None:
    """A service that cannot be stopped is still removed and reinstalled."""
    spec = build_plan(fake_host.config).service
    fake_host.services[spec.name] = "STOPPED"
    fake_host.service_settings[spec.name] = {}
    fake_host.fail(fake_host.nssm_bin, "stop", returncode=1, stderr="service not started")

    registration = _provider(fake_host).register(spec)

    assert registration.replaced is True
    assert len(fake_host.calls(fake_host.nssm_bin, "remove")) == 1


def test_failing_set_raises_nssm_error(fake_host: FakeHost) -> None:
    """A failing ``nssm set`` aborts registration with a service error."""
    spec = build_plan(fake_host.config).service
    fake_host.fail(fake_host.nssm_bin, "set", returncode=2, stderr="Invalid parameter")

    with pytest.raises(NssmError, match=f"nssm set {spec.name} failed \\(exit 2\\)"):
        _provider(fake_host).register(spec)
