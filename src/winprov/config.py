"""Configuration loader for winprov.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``C:\\ProgramData\\winprov\\config.yml`` (or an override path).
3. Environment variables prefixed with ``WINPROV_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    set WINPROV_PORT=5050
    set WINPROV_SERVICE__NAME=MyWebApp

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load winprov configuration. Install with "
        "`pip install winprov` or ensure PyYAML>=6.0 is available."
    ) from exc

from .exit_codes import ExitCode

ENV_PREFIX = "WINPROV_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.VALIDATION


@dataclass(frozen=True)
class PythonConfig:
    """Python runtime installer settings."""

    version: str
    installer_url: str
    executable: Path
    install_args: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "installer_url": self.installer_url,
            "executable": str(self.executable),
            "install_args": list(self.install_args),
        }


@dataclass(frozen=True)
class NssmConfig:
    """Location and source of the NSSM service wrapper."""

    archive_url: str
    install_dir: Path
    archive_subdir: str = "win64"

    @property
    def executable(self) -> Path:
        """Return the path of ``nssm.exe`` inside the install directory."""
        return self.install_dir / "nssm.exe"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "archive_url": self.archive_url,
            "install_dir": str(self.install_dir),
            "archive_subdir": self.archive_subdir,
        }


@dataclass(frozen=True)
class ServiceConfig:
    """Windows service registration defaults."""

    name: str
    display_name: str
    description: str
    app_args: tuple[str, ...]
    rotate_bytes: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "app_args": list(self.app_args),
            "rotate_bytes": self.rotate_bytes,
        }


@dataclass(frozen=True)
class IISExtensionConfig:
    """An IIS extension installed from an MSI package."""

    name: str
    url: str
    marker: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "url": self.url, "marker": str(self.marker)}


@dataclass(frozen=True)
class IISConfig:
    """IIS reverse proxy settings."""

    site_root: Path
    public_port: int
    features: tuple[str, ...]
    extensions: tuple[IISExtensionConfig, ...]
    remove_handlers: tuple[str, ...]
    remove_modules: tuple[str, ...]
    enable_proxy: bool
    appcmd_bin: str
    service_name: str

    @property
    def web_config(self) -> Path:
        """Return the path of the default site's ``web.config``."""
        return self.site_root / "web.config"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site_root": str(self.site_root),
            "public_port": self.public_port,
            "features": list(self.features),
            "extensions": [extension.to_dict() for extension in self.extensions],
            "remove_handlers": list(self.remove_handlers),
            "remove_modules": list(self.remove_modules),
            "enable_proxy": self.enable_proxy,
            "appcmd_bin": self.appcmd_bin,
            "service_name": self.service_name,
        }


@dataclass(frozen=True)
class WorkerConfig:
    """Worker-pool settings consumed by the application's process manager."""

    config_file: Path
    bind: str
    workers: int = 4
    worker_class: str = "sync"
    threads: int = 2
    timeout: int = 600
    graceful_timeout: int = 30
    keepalive: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "bind": self.bind,
            "workers": self.workers,
            "worker_class": self.worker_class,
            "threads": self.threads,
            "timeout": self.timeout,
            "graceful_timeout": self.graceful_timeout,
            "keepalive": self.keepalive,
        }


@dataclass(frozen=True)
class RuntimeEnvConfig:
    """Static values written into the application's ``.env`` file."""

    env_file: Path
    host: str = "0.0.0.0"
    debug: bool = False
    resource_group: str = "rg-python-webapp"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "env_file": str(self.env_file),
            "host": self.host,
            "debug": self.debug,
            "resource_group": self.resource_group,
        }


@dataclass(frozen=True)
class BinariesConfig:
    """Names of the system executables invoked by providers."""

    powershell: str = "powershell"
    sc: str = "sc.exe"
    msiexec: str = "msiexec"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"powershell": self.powershell, "sc": self.sc, "msiexec": self.msiexec}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for winprov."""

    config_file: Path
    install_root: Path
    logs_dir: Path
    state_dir: Path
    templates_dir: Path
    venv_dir: Path
    requirements_file: Path
    port: int
    python: PythonConfig
    nssm: NssmConfig
    service: ServiceConfig
    iis: IISConfig
    workers: WorkerConfig
    runtime_env: RuntimeEnvConfig
    bins: BinariesConfig

    @property
    def operations_dir(self) -> Path:
        """Return the directory holding winprov's own structured logs."""
        return self.state_dir / "logs"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "logs_dir": str(self.logs_dir),
            "state_dir": str(self.state_dir),
            "templates_dir": str(self.templates_dir),
            "venv_dir": str(self.venv_dir),
            "requirements_file": str(self.requirements_file),
            "port": self.port,
            "python": self.python.to_dict(),
            "nssm": self.nssm.to_dict(),
            "service": self.service.to_dict(),
            "iis": self.iis.to_dict(),
            "workers": self.workers.to_dict(),
            "runtime_env": self.runtime_env.to_dict(),
            "bins": self.bins.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": r"C:\ProgramData\winprov\config.yml",
    "install_root": r"C:\webapp",
    "logs_dir": None,  # derived from install_root when absent
    "state_dir": r"C:\ProgramData\winprov",
    "templates_dir": r"C:\ProgramData\winprov\templates",
    "venv_dir": None,
    "requirements_file": None,
    "port": 5000,
    "python": {
        "version": "3.11.9",
        "installer_url": "https://www.python.org/ftp/python/3.11.9/python-3.11.9-amd64.exe",
        "executable": r"C:\Program Files\Python311\python.exe",
        "install_args": ["/quiet", "InstallAllUsers=1", "PrependPath=1", "Include_test=0"],
    },
    "nssm": {
        "archive_url": "https://nssm.cc/release/nssm-2.24.zip",
        "install_dir": r"C:\nssm",
        "archive_subdir": "win64",
    },
    "service": {
        "name": "PythonWebApp",
        "display_name": "Python Web Application",
        "description": "Python web application hosted behind IIS.",
        "app_args": ["app.py"],
        "rotate_bytes": 10485760,
    },
    "iis": {
        "site_root": r"C:\inetpub\wwwroot",
        "public_port": 80,
        "features": ["Web-Server", "Web-WebSockets", "Web-Mgmt-Tools"],
        "extensions": [
            {
                "name": "url-rewrite",
                "url": (
                    "https://download.microsoft.com/download/1/2/8/"
                    "128E2E22-C1B9-44A4-BE2A-5859ED1D4592/rewrite_amd64_en-US.msi"
                ),
                "marker": r"C:\Windows\System32\inetsrv\rewrite.dll",
            },
            {
                "name": "application-request-routing",
                "url": (
                    "https://download.microsoft.com/download/E/9/8/"
                    "E9849D6A-020E-47E4-9FD0-A023E99B54EB/requestRouter_amd64.msi"
                ),
                "marker": r"C:\Program Files\IIS\Application Request Routing\requestRouter.dll",
            },
        ],
        "remove_handlers": ["WebDAV"],
        "remove_modules": ["WebDAVModule"],
        "enable_proxy": True,
        "appcmd_bin": r"C:\Windows\System32\inetsrv\appcmd.exe",
        "service_name": "W3SVC",
    },
    "workers": {
        "config_file": None,
        "bind": None,
        "workers": 4,
        "worker_class": "sync",
        "threads": 2,
        "timeout": 600,
        "graceful_timeout": 30,
        "keepalive": 5,
    },
    "runtime_env": {
        "env_file": None,
        "host": "0.0.0.0",
        "debug": False,
        "resource_group": "rg-python-webapp",
    },
    "bins": {
        "powershell": "powershell",
        "sc": "sc.exe",
        "msiexec": "msiexec",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
EXTENSION_KEYS = {"name", "url", "marker"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    iis_map = _as_dict(raw.get("iis"), "iis")
    extensions = iis_map.get("extensions")
    if extensions is not None:
        for index, entry in enumerate(_as_sequence(extensions, "iis.extensions")):
            mapping = _as_dict(entry, f"iis.extensions[{index}]")
            unknown = set(mapping.keys()) - EXTENSION_KEYS
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown keys for iis.extensions[{index}]: {joined}.")
            missing = EXTENSION_KEYS - set(mapping.keys())
            if missing:
                joined = ", ".join(sorted(missing))
                raise ConfigError(f"Missing keys for iis.extensions[{index}]: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_root = _to_path(raw.get("install_root"))
    state_dir = _to_path(raw.get("state_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else install_root / "logs"
    venv_value = raw.get("venv_dir")
    venv_dir = _to_path(venv_value) if venv_value else install_root / "venv"
    requirements_value = raw.get("requirements_file")
    requirements_file = (
        _to_path(requirements_value) if requirements_value else install_root / "requirements.txt"
    )

    port = _expect_port(raw.get("port"), "port", default=5000)

    python_map = _as_dict(raw.get("python"), "python")
    python = PythonConfig(
        version=str(python_map.get("version", "3.11.9")),
        installer_url=_expect_url(python_map.get("installer_url"), "python.installer_url"),
        executable=_to_path(python_map.get("executable")),
        install_args=_expect_str_tuple(python_map.get("install_args"), "python.install_args"),
    )

    nssm_map = _as_dict(raw.get("nssm"), "nssm")
    nssm = NssmConfig(
        archive_url=_expect_url(nssm_map.get("archive_url"), "nssm.archive_url"),
        install_dir=_to_path(nssm_map.get("install_dir")),
        archive_subdir=str(nssm_map.get("archive_subdir", "win64")),
    )

    service_map = _as_dict(raw.get("service"), "service")
    service_name = str(service_map.get("name", "")).strip()
    if not service_name:
        raise ConfigError("service.name must be a non-empty string.")
    rotate_bytes = _expect_int(service_map.get("rotate_bytes"), "service.rotate_bytes", default=0)
    if rotate_bytes <= 0:
        raise ConfigError("service.rotate_bytes must be greater than zero.")
    service = ServiceConfig(
        name=service_name,
        display_name=str(service_map.get("display_name", service_name)),
        description=str(service_map.get("description", "")),
        app_args=_expect_str_tuple(service_map.get("app_args"), "service.app_args"),
        rotate_bytes=rotate_bytes,
    )

    iis_map = _as_dict(raw.get("iis"), "iis")
    extensions: list[IISExtensionConfig] = []
    for index, entry in enumerate(_as_sequence(iis_map.get("extensions", []), "iis.extensions")):
        mapping = _as_dict(entry, f"iis.extensions[{index}]")
        extensions.append(
            IISExtensionConfig(
                name=str(mapping["name"]),
                url=_expect_url(mapping.get("url"), f"iis.extensions[{index}].url"),
                marker=_to_path(mapping.get("marker")),
            )
        )
    iis = IISConfig(
        site_root=_to_path(iis_map.get("site_root")),
        public_port=_expect_port(iis_map.get("public_port"), "iis.public_port", default=80),
        features=_expect_str_tuple(iis_map.get("features"), "iis.features"),
        extensions=tuple(extensions),
        remove_handlers=_expect_str_tuple(iis_map.get("remove_handlers"), "iis.remove_handlers"),
        remove_modules=_expect_str_tuple(iis_map.get("remove_modules"), "iis.remove_modules"),
        enable_proxy=_expect_bool(iis_map.get("enable_proxy"), "iis.enable_proxy", default=True),
        appcmd_bin=str(iis_map.get("appcmd_bin", "appcmd")),
        service_name=str(iis_map.get("service_name", "W3SVC")),
    )

    env_map = _as_dict(raw.get("runtime_env"), "runtime_env")
    env_file_value = env_map.get("env_file")
    runtime_env = RuntimeEnvConfig(
        env_file=_to_path(env_file_value) if env_file_value else install_root / ".env",
        host=str(env_map.get("host", "0.0.0.0")),
        debug=_expect_bool(env_map.get("debug"), "runtime_env.debug", default=False),
        resource_group=str(env_map.get("resource_group", "")),
    )

    workers_map = _as_dict(raw.get("workers"), "workers")
    worker_file_value = workers_map.get("config_file")
    bind_value = workers_map.get("bind")
    workers = WorkerConfig(
        config_file=(
            _to_path(worker_file_value) if worker_file_value else install_root / "gunicorn.conf.py"
        ),
        bind=str(bind_value) if bind_value else f"{runtime_env.host}:{port}",
        workers=_expect_positive_int(workers_map.get("workers"), "workers.workers", default=4),
        worker_class=str(workers_map.get("worker_class", "sync")),
        threads=_expect_positive_int(workers_map.get("threads"), "workers.threads", default=2),
        timeout=_expect_positive_int(workers_map.get("timeout"), "workers.timeout", default=600),
        graceful_timeout=_expect_positive_int(
            workers_map.get("graceful_timeout"), "workers.graceful_timeout", default=30
        ),
        keepalive=_expect_positive_int(
            workers_map.get("keepalive"), "workers.keepalive", default=5
        ),
    )

    bins_map = _as_dict(raw.get("bins"), "bins")
    bins = BinariesConfig(
        powershell=str(bins_map.get("powershell", "powershell")),
        sc=str(bins_map.get("sc", "sc.exe")),
        msiexec=str(bins_map.get("msiexec", "msiexec")),
    )

    return AppConfig(
        config_file=config_file,
        install_root=install_root,
        logs_dir=logs_dir,
        state_dir=state_dir,
        templates_dir=templates_dir,
        venv_dir=venv_dir,
        requirements_file=requirements_file,
        port=port,
        python=python,
        nssm=nssm,
        service=service,
        iis=iis,
        workers=workers,
        runtime_env=runtime_env,
        bins=bins,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = [
                _deep_copy(_as_dict(item, f"copy.{key}")) if isinstance(item, Mapping) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_url(value: object | None, label: str) -> str:
    url = _expect_str(value, label).strip()
    if not url.lower().startswith("https://"):
        raise ConfigError(f"{label} must be an https:// URL. Got {url!r}.")
    return url


def _expect_str_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(str(item) for item in _as_sequence(value, label))


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BinariesConfig",
    "ConfigError",
    "IISConfig",
    "IISExtensionConfig",
    "NssmConfig",
    "PythonConfig",
    "RuntimeEnvConfig",
    "ServiceConfig",
    "WorkerConfig",
    "load_config",
]
