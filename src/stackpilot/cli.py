"""stackpilot CLI.

Usage:
    stackpilot app deploy -f app.yaml --region westeurope
    stackpilot env deploy -f env.yaml
    stackpilot env delete --app shop --name test --yes
    stackpilot svc deploy -f svc.yaml
    stackpilot svc delete --app shop --name api [--env test]
    stackpilot pipeline deploy -f pipeline.yaml
    stackpilot task run -f task.yaml --follow
    stackpilot plan deploy plan.yaml --region westeurope
    stackpilot info [--app shop]
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from .commands import (
    ActionCommand,
    AppInfo,
    CommandContext,
    DeleteEnvironmentCommand,
    DeleteServiceCommand,
    DeployAppCommand,
    DeployEnvironmentCommand,
    DeployPipelineCommand,
    DeployPlanCommand,
    DeployServiceCommand,
    InfoCommand,
    RunTaskCommand,
    outcome_summary,
    raise_for_plan,
)
from .config import ConfigurationError, EngineConfig
from .errors import StackpilotError
from .main import setup_logging
from .models import (
    CreateAppInput,
    CreateEnvironmentInput,
    CreatePipelineInput,
    CreateTaskResourcesInput,
    DeployServiceInput,
)
from .orchestrator import PlanResult
from .plan_loader import load_plan, load_typed
from .store import LocalConfigStore

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

ContextFactory = Callable[["CliState"], CommandContext]


def azure_context(state: CliState) -> CommandContext:
    """Build a context against Azure from the environment and CLI options."""
    config = EngineConfig.from_env()
    return CommandContext.for_azure(
        config,
        LocalConfigStore(config.state_dir),
        profile=state.profile,
        registry=state.registry,
        echo=click.echo,
        confirm=_confirm,
    )


def _confirm(message: str) -> bool:
    return click.confirm(message, default=False)


@dataclass
class CliState:
    """Options shared by every command; tests swap the factory."""

    profile: str | None = None
    registry: str | None = None
    factory: ContextFactory = azure_context


def run_command(
    state: CliState,
    build: Callable[[CommandContext], ActionCommand],
    *,
    interruptible: bool = False,
) -> Any:
    """Build the context and command, run it, print recommended actions.

    Raises:
        click.ClickException: On any stackpilot or configuration error.
    """
    try:
        command_ctx = state.factory(state)
    except (ConfigurationError, StackpilotError) as e:
        raise click.ClickException(str(e)) from e

    try:
        command = build(command_ctx)
        if interruptible and isinstance(command, RunTaskCommand):
            result = asyncio.run(_interruptible(command))
        else:
            result = asyncio.run(command.run())
    except StackpilotError as e:
        raise click.ClickException(f"[{e.kind.value}] {e}") from e
    finally:
        command_ctx.close()

    if command.cancelled:
        click.echo("Cancelled")
        return None

    for action in command.recommended_actions():
        click.secho(f"Recommended: {action}", fg="yellow")
    return result


async def _interruptible(command: RunTaskCommand) -> Any:
    """Run a task command whose stop_event is set by SIGINT/SIGTERM."""
    stop_event = command.stop_event
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    try:
        return await command.run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def _file_option() -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return click.option(
        "--file",
        "-f",
        "path",
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Input YAML file",
    )


def _load(path: Path, kind: str, model: type[Any]) -> Any:
    try:
        return load_typed(path, kind, model)
    except StackpilotError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="stackpilot")
@click.option("--profile", envvar="STACKPILOT_PROFILE", help="Credential profile name")
@click.option("--registry", envvar="STACKPILOT_REGISTRY", help="Container registry for images")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines on stdout")
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    registry: str | None,
    verbose: bool,
    json_logs: bool,
) -> None:
    """Provision and operate containerized applications.

    \b
    Quick start:
      stackpilot app deploy -f app.yaml --region westeurope
      stackpilot env deploy -f env.yaml
      stackpilot svc deploy -f svc.yaml
    """
    state = ctx.ensure_object(CliState)
    state.profile = profile or state.profile
    state.registry = registry or state.registry
    level = logging.INFO if verbose or json_logs else logging.WARNING
    setup_logging(level=level, json_format=json_logs)


# =============================================================================
# Applications
# =============================================================================


@cli.group()
def app() -> None:
    """Application commands: deploy."""
    pass


@app.command("deploy")
@_file_option()
@click.option("--region", envvar="AZURE_LOCATION", required=True, help="Home region")
@click.pass_obj
def app_deploy(state: CliState, path: Path, region: str) -> None:
    """Deploy the application stacks."""
    app_input = _load(path, "Application", CreateAppInput)
    record = run_command(state, lambda c: DeployAppCommand(c, app_input, region))
    if record is not None:
        click.secho(f"✓ Application {record.name} deployed", fg="green")


# =============================================================================
# Environments
# =============================================================================


@cli.group()
def env() -> None:
    """Environment commands: deploy, delete."""
    pass


@env.command("deploy")
@_file_option()
@click.pass_obj
def env_deploy(state: CliState, path: Path) -> None:
    """Deploy an environment."""
    env_input = _load(path, "Environment", CreateEnvironmentInput)
    record = run_command(state, lambda c: DeployEnvironmentCommand(c, env_input))
    if record is not None:
        click.secho(f"✓ Environment {record.name} deployed", fg="green")
        if record.cluster_id:
            click.echo(f"  cluster: {record.cluster_id}")


@env.command("delete")
@click.option("--app", "app_name", required=True, help="Application name")
@click.option("--name", "env_name", required=True, help="Environment name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--empty-buckets", is_flag=True, help="Empty environment buckets before deleting")
@click.pass_obj
def env_delete(
    state: CliState, app_name: str, env_name: str, yes: bool, empty_buckets: bool
) -> None:
    """Delete an environment."""
    deleted = run_command(
        state, lambda c: DeleteEnvironmentCommand(c, app_name, env_name, yes, empty_buckets)
    )
    if deleted is not None:
        click.secho(f"✓ Environment {env_name} deleted", fg="green")


# =============================================================================
# Services
# =============================================================================


@cli.group()
def svc() -> None:
    """Service commands: deploy, delete."""
    pass


@svc.command("deploy")
@_file_option()
@click.pass_obj
def svc_deploy(state: CliState, path: Path) -> None:
    """Build, push and deploy a service."""
    svc_input = _load(path, "Service", DeployServiceInput)
    success = run_command(state, lambda c: DeployServiceCommand(c, svc_input))
    if success is not None:
        status = "deployed" if success.changed else "unchanged"
        click.secho(f"✓ Service {svc_input.name} {status}", fg="green")
        for key, value in sorted(success.outputs.items()):
            click.echo(f"  {key}: {value}")


@svc.command("delete")
@click.option("--app", "app_name", required=True, help="Application name")
@click.option("--name", "svc_name", required=True, help="Service name")
@click.option("--env", "env_name", default=None, help="Only this environment")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def svc_delete(
    state: CliState, app_name: str, svc_name: str, env_name: str | None, yes: bool
) -> None:
    """Delete a service from one or all environments."""
    deleted = run_command(
        state, lambda c: DeleteServiceCommand(c, app_name, svc_name, env_name, yes)
    )
    if deleted is not None:
        where = ", ".join(deleted) or "no environment"
        click.secho(f"✓ Service {svc_name} deleted from {where}", fg="green")


# =============================================================================
# Pipelines
# =============================================================================


@cli.group()
def pipeline() -> None:
    """Pipeline commands: deploy."""
    pass


@pipeline.command("deploy")
@_file_option()
@click.pass_obj
def pipeline_deploy(state: CliState, path: Path) -> None:
    """Create or update a pipeline."""
    pipeline_input = _load(path, "Pipeline", CreatePipelineInput)
    success = run_command(state, lambda c: DeployPipelineCommand(c, pipeline_input))
    if success is not None:
        status = "deployed" if success.changed else "unchanged"
        click.secho(f"✓ Pipeline {pipeline_input.name} {status}", fg="green")


# =============================================================================
# Tasks
# =============================================================================


@cli.group()
def task() -> None:
    """One-off task commands: run."""
    pass


@task.command("run")
@_file_option()
@click.option("--follow", is_flag=True, help="Stream logs until the tasks stop or Ctrl-C")
@click.pass_obj
def task_run(state: CliState, path: Path, follow: bool) -> None:
    """Run a one-off task."""
    task_input = _load(path, "Task", CreateTaskResourcesInput)
    result = run_command(
        state, lambda c: RunTaskCommand(c, task_input, follow=follow), interruptible=follow
    )
    if result is not None:
        for handle in result.handles:
            click.echo(f"  task: {handle.task_id}")


# =============================================================================
# Plans
# =============================================================================


@cli.group()
def plan() -> None:
    """Plan commands: deploy."""
    pass


@plan.command("deploy")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--region", envvar="AZURE_LOCATION", required=True, help="Application home region")
@click.pass_obj
def plan_deploy(state: CliState, plan_file: Path, region: str) -> None:
    """Deploy every stack of a plan in dependency order."""
    try:
        plan_spec = load_plan(plan_file)
    except StackpilotError as e:
        raise click.ClickException(str(e)) from e

    result: PlanResult | None = run_command(
        state, lambda c: DeployPlanCommand(c, plan_spec, region)
    )
    if result is None:
        return
    for line in outcome_summary(result):
        click.echo(f"  {line}")
    try:
        raise_for_plan(result)
    except StackpilotError as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ Plan for {plan_spec.app.name} converged", fg="green")


# =============================================================================
# Info
# =============================================================================


@cli.command()
@click.option("--app", "app_name", default=None, help="Show one application in detail")
@click.pass_obj
def info(state: CliState, app_name: str | None) -> None:
    """Show applications, environments and where services run."""
    infos: list[AppInfo] | None = run_command(state, lambda c: InfoCommand(c, app_name))
    if not infos:
        click.echo("No applications found")
        return
    for entry in infos:
        click.secho(entry.app.name, bold=True)
        for environment in entry.environments:
            prod = " (prod)" if environment.prod else ""
            click.echo(f"  env {environment.name}: {environment.region}{prod}")
        for svc_name, envs in sorted(entry.services.items()):
            click.echo(f"  svc {svc_name}: {', '.join(envs) or 'not deployed'}")


def main() -> None:
    """Entry point for the stackpilot CLI."""
    cli(obj=CliState())


if __name__ == "__main__":
    main()
