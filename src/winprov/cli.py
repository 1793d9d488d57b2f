"""Typer-powered command line interface for ``winprov``."""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import ProvisionError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import ProvisionPlan, build_plan
from .provisioner import STEP_DESCRIPTIONS, Provisioner, StepResult
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to winprov's YAML config file.",
)

INSTRUMENTATION_KEY_OPTION = typer.Option(
    None,
    "--instrumentation-key",
    envvar="APPINSIGHTS_INSTRUMENTATIONKEY",
    help="Application Insights instrumentation key written to the .env file.",
)
CONNECTION_STRING_OPTION = typer.Option(
    None,
    "--connection-string",
    envvar="APPLICATIONINSIGHTS_CONNECTION_STRING",
    help="Application Insights connection string written to the .env file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

ARTIFACT_TEMPLATES: dict[str, str] = {
    "env": "env/app.env.j2",
    "web-config": "iis/web.config.j2",
    "worker-config": "workers/gunicorn.conf.py.j2",
}

STATUS_STYLES = {
    "changed": "green",
    "success": "cyan",
    "skipped": "dim",
    "error": "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision a Windows host to run a Python web application as a service
        behind IIS.

        Do not run more than one provisioning command against the same host at
        a time.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.operations_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the winprov version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"winprov {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _print_step(step: StepResult) -> None:
    style = STATUS_STYLES.get(step.status, "white")
    detail = f" ({escape(step.detail)})" if step.detail else ""
    console.print(f"[{style}]{step.status:>8}[/{style}]  {step.name}{detail}")


def _plan_for(
    runtime: RuntimeContext,
    instrumentation_key: str | None,
    connection_string: str | None,
) -> ProvisionPlan:
    return build_plan(
        runtime.config,
        instrumentation_key=instrumentation_key,
        connection_string=connection_string,
    )


def _artifact_context(plan: ProvisionPlan, artifact: str) -> Mapping[str, object]:
    if artifact == "env":
        return plan.runtime.template_context()
    if artifact == "web-config":
        return plan.proxy.template_context()
    return plan.workers.template_context()


@app.command()
def provision(
    ctx: typer.Context,
    instrumentation_key: str | None = INSTRUMENTATION_KEY_OPTION,
    connection_string: str | None = CONNECTION_STRING_OPTION,
) -> None:
    """Provision this host: runtime, service, reverse proxy, startup."""
    runtime = _get_runtime(ctx)
    provision_plan = _plan_for(runtime, instrumentation_key, connection_string)
    with runtime.logger.operation(
        "provision",
        args={
            "instrumentation_key": bool(instrumentation_key),
            "connection_string": bool(connection_string),
        },
        target={
            "kind": "host",
            "service": provision_plan.service.name,
            "port": provision_plan.host.port,
        },
    ) as op:
        provisioner = Provisioner.from_config(runtime.config, templates=runtime.templates)

        def _report(step: StepResult) -> None:
            op.add_step(step.name, status=step.status, detail=step.detail)
            _print_step(step)

        try:
            result = provisioner.provision(provision_plan, on_step=_report)
        except ProvisionError as exc:
            _command_error(op, f"Provisioning failed: {exc}", rc=int(exc.exit_code))

        console.print(
            f"[green]Provisioning complete.[/green] Service '{provision_plan.service.name}' "
            f"is reachable through IIS on port {provision_plan.proxy.public_port}."
        )
        op.success("Provisioning complete.", changed=result.changed)


@app.command()
def plan(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the provisioning steps and derived settings without changing the host."""
    runtime = _get_runtime(ctx)
    provision_plan = _plan_for(runtime, None, None)
    with runtime.logger.operation(
        "plan",
        args={"json": json_output},
        target={"kind": "host", "service": provision_plan.service.name},
    ) as op:
        if json_output:
            payload = {
                "steps": [
                    {"name": name, "description": description}
                    for name, description in STEP_DESCRIPTIONS.items()
                ],
                "plan": provision_plan.to_dict(),
            }
            console.print_json(data=payload)
            op.success("Reported provisioning plan.", changed=0)
            return

        table = Table(title="Provisioning steps")
        table.add_column("#", justify="right")
        table.add_column("Step")
        table.add_column("Description")
        for index, (name, description) in enumerate(STEP_DESCRIPTIONS.items(), start=1):
            table.add_row(str(index), name, description)
        console.print(table)
        service = provision_plan.service
        proxy = provision_plan.proxy
        console.print(f"Service: {service.name} -> {service.executable}")
        console.print(f"Proxy: port {proxy.public_port} -> {proxy.target_url}")
        op.success("Reported provisioning plan.", changed=0)


@app.command()
def render(
    ctx: typer.Context,
    artifact: str = typer.Argument(..., help="One of: env, web-config, worker-config."),
    instrumentation_key: str | None = INSTRUMENTATION_KEY_OPTION,
    connection_string: str | None = CONNECTION_STRING_OPTION,
) -> None:
    """Print a generated configuration file without writing it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"artifact": artifact},
        target={"kind": "artifact", "name": artifact},
    ) as op:
        template_name = ARTIFACT_TEMPLATES.get(artifact)
        if template_name is None:
            allowed = ", ".join(ARTIFACT_TEMPLATES)
            _command_error(op, f"Unknown artifact '{artifact}'. Choose from: {allowed}.")
        provision_plan = _plan_for(runtime, instrumentation_key, connection_string)
        try:
            content = runtime.templates.render_to_string(
                template_name,
                _artifact_context(provision_plan, artifact),
            )
        except ProvisionError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        typer.echo(content, nl=False)
        op.success(f"Rendered {artifact}.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "path": runtime.config.config_file},
    ) as op:
        payload = runtime.config.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(title="winprov configuration")
            table.add_column("Key")
            table.add_column("Value")
            for key, value in payload.items():
                rendered = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
                table.add_row(key, rendered)
            console.print(table)
        op.success("Reported configuration.", changed=0)


def main() -> None:  # pragma: no cover - console script entry point
    """Run the winprov CLI."""
    app()


__all__ = ["app", "main"]
