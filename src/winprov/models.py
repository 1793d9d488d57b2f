"""Entities derived from configuration that describe the provisioned host."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig


@dataclass(frozen=True, slots=True)
class HostTarget:
    """The machine being provisioned."""

    install_root: Path
    logs_dir: Path
    port: int

    def directories(self) -> tuple[Path, ...]:
        """Return the directories that must exist before files are written."""
        return (self.install_root, self.logs_dir)


@dataclass(frozen=True, slots=True)
class ServiceSpec:
    """A Windows service registered through NSSM."""

    name: str
    display_name: str
    description: str
    executable: Path
    arguments: tuple[str, ...]
    working_directory: Path
    stdout_log: Path
    stderr_log: Path
    rotate_bytes: int
    start_mode: str = "SERVICE_AUTO_START"

    def settings(self) -> list[tuple[str, str]]:
        """Return the ``nssm set`` parameters applied after installation."""
        return [
            ("AppDirectory", str(self.working_directory)),
            ("DisplayName", self.display_name),
            ("Description", self.description),
            ("Start", self.start_mode),
            ("AppStdout", str(self.stdout_log)),
            ("AppStderr", str(self.stderr_log)),
            ("AppRotateFiles", "1"),
            ("AppRotateOnline", "1"),
            ("AppRotateBytes", str(self.rotate_bytes)),
        ]


@dataclass(frozen=True, slots=True)
class ReverseProxyRule:
    """IIS rewrite rule forwarding the public site to the application port."""

    public_port: int
    upstream_port: int
    upstream_host: str = "localhost"
    match_url: str = "(.*)"
    rule_name: str = "ReverseProxyInboundRule1"
    remove_handlers: tuple[str, ...] = ()
    remove_modules: tuple[str, ...] = ()

    @property
    def target_url(self) -> str:
        """Return the rewrite action URL using IIS back-reference syntax."""
        return f"http://{self.upstream_host}:{self.upstream_port}/{{R:1}}"

    def forward(self, path: str) -> str | None:
        """Return the upstream URL for a request *path*, or None if unmatched.

        IIS evaluates the match pattern against the URL path without its
        leading slash.
        """
        match = re.match(self.match_url, path.lstrip("/"))
        if match is None:
            return None
        captured = match.group(1) if match.groups() else ""
        return self.target_url.replace("{R:1}", captured or "")

    def template_context(self) -> dict[str, object]:
        """Return the render context for ``iis/web.config.j2``."""
        return {
            "rule_name": self.rule_name,
            "match_url": self.match_url,
            "target_url": self.target_url,
            "remove_handlers": list(self.remove_handlers),
            "remove_modules": list(self.remove_modules),
        }


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Ordered ``KEY=VALUE`` settings written to the application's ``.env``."""

    path: Path
    settings: tuple[tuple[str, str], ...]

    def as_dict(self) -> dict[str, str]:
        """Return the settings as a mapping."""
        return dict(self.settings)

    def template_context(self) -> dict[str, object]:
        """Return the render context for ``env/app.env.j2``."""
        return {"settings": list(self.settings)}


@dataclass(frozen=True, slots=True)
class WorkerPoolConfig:
    """Settings for the application's process-worker manager."""

    path: Path
    bind: str
    workers: int
    worker_class: str
    threads: int
    timeout: int
    graceful_timeout: int
    keepalive: int
    accesslog: Path
    errorlog: Path
    loglevel: str = "info"

    def template_context(self) -> dict[str, object]:
        """Return the render context for ``workers/gunicorn.conf.py.j2``."""
        return {
            "bind": self.bind,
            "workers": self.workers,
            "worker_class": self.worker_class,
            "threads": self.threads,
            "timeout": self.timeout,
            "graceful_timeout": self.graceful_timeout,
            "keepalive": self.keepalive,
            "accesslog": str(self.accesslog),
            "errorlog": str(self.errorlog),
            "loglevel": self.loglevel,
        }


@dataclass(frozen=True, slots=True)
class ProvisionPlan:
    """Everything the provisioner needs for a single run."""

    host: HostTarget
    service: ServiceSpec
    proxy: ReverseProxyRule
    runtime: RuntimeConfig
    workers: WorkerPoolConfig
    requirements_file: Path
    venv_dir: Path

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary of the plan."""
        return {
            "host": {
                "install_root": str(self.host.install_root),
                "logs_dir": str(self.host.logs_dir),
                "port": self.host.port,
            },
            "service": {
                "name": self.service.name,
                "executable": str(self.service.executable),
                "arguments": list(self.service.arguments),
                "settings": dict(self.service.settings()),
            },
            "proxy": {
                "public_port": self.proxy.public_port,
                "match_url": self.proxy.match_url,
                "target_url": self.proxy.target_url,
            },
            "runtime": {"path": str(self.runtime.path), "keys": list(self.runtime.as_dict())},
            "workers": {"path": str(self.workers.path), "bind": self.workers.bind},
            "requirements_file": str(self.requirements_file),
            "venv_dir": str(self.venv_dir),
        }


def venv_python(venv_dir: Path) -> Path:
    """Return the interpreter inside a Windows virtual environment."""
    return venv_dir / "Scripts" / "python.exe"


def build_plan(
    config: AppConfig,
    *,
    instrumentation_key: str | None = None,
    connection_string: str | None = None,
) -> ProvisionPlan:
    """Derive a :class:`ProvisionPlan` from *config* and telemetry credentials."""
    host = HostTarget(install_root=config.install_root, logs_dir=config.logs_dir, port=config.port)

    service = ServiceSpec(
        name=config.service.name,
        display_name=config.service.display_name,
        description=config.service.description,
        executable=venv_python(config.venv_dir),
        arguments=config.service.app_args,
        working_directory=config.install_root,
        stdout_log=config.logs_dir / "service_stdout.log",
        stderr_log=config.logs_dir / "service_stderr.log",
        rotate_bytes=config.service.rotate_bytes,
    )

    proxy = ReverseProxyRule(
        public_port=config.iis.public_port,
        upstream_port=config.port,
        remove_handlers=config.iis.remove_handlers,
        remove_modules=config.iis.remove_modules,
    )

    runtime = RuntimeConfig(
        path=config.runtime_env.env_file,
        settings=(
            ("HOST", config.runtime_env.host),
            ("PORT", str(config.port)),
            ("DEBUG", str(config.runtime_env.debug)),
            ("APPINSIGHTS_INSTRUMENTATIONKEY", instrumentation_key or ""),
            ("APPLICATIONINSIGHTS_CONNECTION_STRING", connection_string or ""),
            ("AZURE_RESOURCE_GROUP", config.runtime_env.resource_group),
        ),
    )

    workers = WorkerPoolConfig(
        path=config.workers.config_file,
        bind=config.workers.bind,
        workers=config.workers.workers,
        worker_class=config.workers.worker_class,
        threads=config.workers.threads,
        timeout=config.workers.timeout,
        graceful_timeout=config.workers.graceful_timeout,
        keepalive=config.workers.keepalive,
        accesslog=config.logs_dir / "access.log",
        errorlog=config.logs_dir / "error.log",
    )

    return ProvisionPlan(
        host=host,
        service=service,
        proxy=proxy,
        runtime=runtime,
        workers=workers,
        requirements_file=config.requirements_file,
        venv_dir=config.venv_dir,
    )


__all__ = [
    "HostTarget",
    "ProvisionPlan",
    "ReverseProxyRule",
    "RuntimeConfig",
    "ServiceSpec",
    "WorkerPoolConfig",
    "build_plan",
    "venv_python",
]
