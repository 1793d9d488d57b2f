"""Sequential, idempotent provisioning of a Windows application host.

Each step checks whether its target state is already satisfied before doing
any work. Steps run strictly in order; the first failure propagates and the
remaining steps are not attempted. Nothing is rolled back, and re-running is
safe because every step re-checks its precondition.

Concurrent runs against the same host are not supported.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .downloads import Downloader
from .errors import FilesystemError, ProvisionError
from .models import ProvisionPlan
from .providers.iis import IISProvider
from .providers.nssm import NssmProvider
from .providers.python_runtime import PythonRuntimeManager
from .providers.service_control import ServiceControl
from .providers.virtualenv import VirtualenvProvider
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

STEP_CHANGED = "changed"
STEP_SKIPPED = "skipped"
STEP_SUCCESS = "success"
STEP_ERROR = "error"


@dataclass(slots=True)
class StepResult:
    """Outcome of a single provisioning step."""

    name: str
    status: str
    detail: str = ""


@dataclass(slots=True)
class ProvisionResult:
    """Ordered outcomes of a completed provisioning run."""

    steps: list[StepResult] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Return the number of steps that modified the host."""
        return sum(1 for step in self.steps if step.status == STEP_CHANGED)


StepCallback = Callable[[StepResult], None]
StepHandler = Callable[[ProvisionPlan], StepResult]

STEP_DESCRIPTIONS: dict[str, str] = {
    "directories.ensure": "Create the install root and log directory.",
    "runtime.ensure": "Install the Python runtime if its interpreter is missing.",
    "nssm.ensure": "Install the NSSM service wrapper if its directory is missing.",
    "runtime_config.write": "Write the application's .env file.",
    "virtualenv.create": "Create the application's virtual environment.",
    "requirements.install": "Install application dependencies into the environment.",
    "service.register": "Register the application as a Windows service.",
    "iis.features": "Install the IIS role, WebSockets and management tools.",
    "iis.extensions": "Install IIS extensions (URL Rewrite, ARR) if missing.",
    "iis.site": "Write the reverse proxy rule into the default site's web.config.",
    "worker_config.write": "Write the worker-pool configuration file.",
    "service.start": "Start the application service.",
    "iis.running": "Ensure the IIS host service is running.",
}


@dataclass(slots=True)
class Provisioner:
    """Run the provisioning steps against the local host."""

    runtime: PythonRuntimeManager
    nssm: NssmProvider
    virtualenv: VirtualenvProvider
    iis: IISProvider
    service_control: ServiceControl
    templates: TemplateEngine

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        templates: TemplateEngine | None = None,
        downloader: Downloader | None = None,
    ) -> Provisioner:
        """Wire providers for *config*."""
        templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        downloader = downloader or Downloader()
        service_control = ServiceControl(sc_bin=config.bins.sc)
        return cls(
            runtime=PythonRuntimeManager(config=config.python, downloader=downloader),
            nssm=NssmProvider(
                config=config.nssm,
                downloader=downloader,
                service_control=service_control,
            ),
            virtualenv=VirtualenvProvider(venv_dir=config.venv_dir),
            iis=IISProvider(
                config=config.iis,
                templates=templates,
                downloader=downloader,
                service_control=service_control,
                powershell_bin=config.bins.powershell,
                msiexec_bin=config.bins.msiexec,
            ),
            service_control=service_control,
            templates=templates,
        )

    def steps(self) -> list[tuple[str, StepHandler]]:
        """Return the ordered ``(name, handler)`` pairs."""
        return [
            ("directories.ensure", self._ensure_directories),
            ("runtime.ensure", self._ensure_runtime),
            ("nssm.ensure", self._ensure_nssm),
            ("runtime_config.write", self._write_runtime_config),
            ("virtualenv.create", self._create_virtualenv),
            ("requirements.install", self._install_requirements),
            ("service.register", self._register_service),
            ("iis.features", self._ensure_iis_features),
            ("iis.extensions", self._ensure_iis_extensions),
            ("iis.site", self._write_site_config),
            ("worker_config.write", self._write_worker_config),
            ("service.start", self._start_service),
            ("iis.running", self._ensure_iis_running),
        ]

    def provision(
        self,
        plan: ProvisionPlan,
        *,
        on_step: StepCallback | None = None,
    ) -> ProvisionResult:
        """Execute every step for *plan*, stopping at the first failure."""
        result = ProvisionResult()
        for name, handler in self.steps():
            LOGGER.debug("Starting step %s", name)
            try:
                outcome = handler(plan)
            except ProvisionError as exc:
                if on_step is not None:
                    on_step(StepResult(name=name, status=STEP_ERROR, detail=str(exc)))
                raise
            result.steps.append(outcome)
            if on_step is not None:
                on_step(outcome)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _ensure_directories(self, plan: ProvisionPlan) -> StepResult:
        created: list[str] = []
        for directory in plan.host.directories():
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FilesystemError(f"Cannot create directory {directory}: {exc}") from exc
            created.append(str(directory))
        if not created:
            return StepResult("directories.ensure", STEP_SKIPPED, "directories present")
        return StepResult("directories.ensure", STEP_CHANGED, f"created {', '.join(created)}")

    def _ensure_runtime(self, plan: ProvisionPlan) -> StepResult:
        outcome = self.runtime.ensure_installed()
        if not outcome.installation_performed:
            return StepResult("runtime.ensure", STEP_SKIPPED, f"found {outcome.executable}")
        detail = f"installed {outcome.executable}"
        if outcome.version is not None:
            detail = f"installed Python {outcome.version.version} at {outcome.executable}"
        return StepResult("runtime.ensure", STEP_CHANGED, detail)

    def _ensure_nssm(self, plan: ProvisionPlan) -> StepResult:
        if not self.nssm.ensure_installed():
            return StepResult("nssm.ensure", STEP_SKIPPED, f"found {self.nssm.config.install_dir}")
        return StepResult("nssm.ensure", STEP_CHANGED, f"installed {self.nssm.nssm_bin}")

    def _write_runtime_config(self, plan: ProvisionPlan) -> StepResult:
        return self._render(
            "runtime_config.write",
            "env/app.env.j2",
            plan.runtime.path,
            plan.runtime.template_context(),
        )

    def _create_virtualenv(self, plan: ProvisionPlan) -> StepResult:
        created = self.virtualenv.create(self.runtime.config.executable)
        status = STEP_CHANGED if created else STEP_SUCCESS
        return StepResult("virtualenv.create", status, str(self.virtualenv.venv_dir))

    def _install_requirements(self, plan: ProvisionPlan) -> StepResult:
        self.virtualenv.install_requirements(plan.requirements_file)
        return StepResult("requirements.install", STEP_SUCCESS, str(plan.requirements_file))

    def _register_service(self, plan: ProvisionPlan) -> StepResult:
        registration = self.nssm.register(plan.service)
        action = "replaced" if registration.replaced else "installed"
        detail = f"{action} {registration.name} ({registration.settings_applied} settings)"
        return StepResult("service.register", STEP_CHANGED, detail)

    def _ensure_iis_features(self, plan: ProvisionPlan) -> StepResult:
        installed = self.iis.ensure_features()
        if not installed:
            return StepResult("iis.features", STEP_SKIPPED, "features present")
        return StepResult("iis.features", STEP_CHANGED, f"installed {', '.join(installed)}")

    def _ensure_iis_extensions(self, plan: ProvisionPlan) -> StepResult:
        installed = self.iis.ensure_extensions()
        if not installed:
            return StepResult("iis.extensions", STEP_SKIPPED, "extensions present")
        return StepResult("iis.extensions", STEP_CHANGED, f"installed {', '.join(installed)}")

    def _write_site_config(self, plan: ProvisionPlan) -> StepResult:
        site = self.iis.render_site(plan.proxy)
        status = STEP_CHANGED if site.changed else STEP_SUCCESS
        detail = f"{site.path} -> {plan.proxy.target_url}"
        if site.proxy is not None:
            detail += " (proxy enabled)"
        return StepResult("iis.site", status, detail)

    def _write_worker_config(self, plan: ProvisionPlan) -> StepResult:
        return self._render(
            "worker_config.write",
            "workers/gunicorn.conf.py.j2",
            plan.workers.path,
            plan.workers.template_context(),
        )

    def _start_service(self, plan: ProvisionPlan) -> StepResult:
        self.service_control.start(plan.service.name)
        return StepResult("service.start", STEP_CHANGED, plan.service.name)

    def _ensure_iis_running(self, plan: ProvisionPlan) -> StepResult:
        name = self.iis.config.service_name
        if not self.iis.ensure_running():
            return StepResult("iis.running", STEP_SKIPPED, f"{name} already running")
        return StepResult("iis.running", STEP_CHANGED, f"started {name}")

    def _render(
        self,
        step: str,
        template_name: str,
        destination: Path,
        context: dict[str, object],
    ) -> StepResult:
        changed = self.templates.render_to_path(template_name, destination, context)
        return StepResult(step, STEP_CHANGED if changed else STEP_SUCCESS, str(destination))


__all__ = [
    "STEP_DESCRIPTIONS",
    "ProvisionResult",
    "Provisioner",
    "StepResult",
]
