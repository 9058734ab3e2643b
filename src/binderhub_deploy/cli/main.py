"""binderhub-deploy CLI — deploy BinderHub on Azure Kubernetes Service.

Commands:
    deploy      Create the cluster and install BinderHub
    teardown    Delete the resource group holding a deployment
    info        Show the JupyterHub and BinderHub addresses
    logs        Show the BinderHub pod logs
    names       Show the resource names derived from a hub name
    render      Render config.yaml and secret.yaml without deploying
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from types import FrameType
from typing import NoReturn

import click

from binderhub_deploy import __version__
from binderhub_deploy.config import (
    DEFAULT_CONFIG_FILE,
    ConfigSource,
    ToolDefaults,
    load_defaults,
    resolve_settings,
    resolve_target,
    select_source,
)
from binderhub_deploy.credentials import resolve_login_mode
from binderhub_deploy.driver import (
    DeploymentDriver,
    DriverOptions,
    binder_logs,
    fetch_cluster_credentials,
    hub_addresses,
    teardown,
)
from binderhub_deploy.errors import DeployError, DeploymentCancelled, InvalidConfig
from binderhub_deploy.journal import StageJournal
from binderhub_deploy.models import DeploymentReport
from binderhub_deploy.names import derive_cluster_name, derive_resource_group_name
from binderhub_deploy.renderer import (
    CONFIG_FILENAME,
    SECRET_FILENAME,
    generate_token,
    render_config,
    render_secret,
    write_values,
)
from binderhub_deploy.runner.subprocess_runner import SubprocessRunner

logger = logging.getLogger("binderhub_deploy")


def _resolve_defaults() -> ToolDefaults:
    """Load binderhub-deploy.yaml (auto-discover; only invalid values are fatal)."""
    try:
        return load_defaults()
    except InvalidConfig as exc:
        _fail(exc)
    except Exception:
        return ToolDefaults()


def _or(explicit: str | None, cfg_val: str | None, fallback: str) -> str:
    """Return first non-None value: explicit CLI flag > defaults file > fallback."""
    return explicit or cfg_val or fallback


def _setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def _tool_paths(defaults: ToolDefaults) -> dict[str, str]:
    return {
        "az": defaults.az_path,
        "kubectl": defaults.kubectl_path,
        "helm": defaults.helm_path,
    }


def _select(config_file: str | None, container_mode: bool | None, defaults: ToolDefaults) -> ConfigSource:
    path = _or(config_file, defaults.config_file, DEFAULT_CONFIG_FILE)
    return select_source(os.environ, path, container_mode=container_mode)


def _fail(exc: DeployError, report: DeploymentReport | None = None) -> NoReturn:
    where = f" (stage: {exc.stage})" if exc.stage else ""
    click.echo(click.style("ERROR", fg="red", bold=True) + f"{where} — {exc}", err=True)
    if report is not None:
        completed = report.completed_stages
        click.echo(
            "  completed stages: " + (", ".join(completed) if completed else "none"),
            err=True,
        )
    sys.exit(exc.exit_code)


def _cancel_on_sigterm(cancel: threading.Event) -> Callable[[int, FrameType | None], None]:
    """SIGTERM handler: flag the run as cancelled and interrupt the running command.

    ``subprocess.run`` kills its child when interrupted. A second SIGTERM
    terminates the process outright.
    """

    def handler(signum: int, frame: FrameType | None) -> None:
        cancel.set()
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        raise KeyboardInterrupt

    return handler


def _print_report(report: DeploymentReport) -> None:
    color = {"completed": "green", "skipped": "cyan", "failed": "red"}
    for stage in report.stages:
        badge = click.style(f"{stage.status.value.upper():9}", fg=color.get(stage.status.value, "white"))
        suffix = f"  {stage.detail}" if stage.detail else ""
        click.echo(f"  {badge} {stage.name}{suffix}")


container_mode_option = click.option(
    "--container-mode/--interactive-mode",
    "container_mode",
    default=None,
    help="Force the input mode (default: container mode if BINDERHUB_CONTAINER_MODE is set)",
)
config_file_option = click.option(
    "--config-file", default=None,
    help=f"Path to the JSON config file (default: ./{DEFAULT_CONFIG_FILE})",
)
verbose_option = click.option("--verbose", "-v", is_flag=True, help="Show debug output")
_POSITIVE_SECONDS = click.FloatRange(min=0, min_open=True)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """binderhub-deploy: BinderHub on Azure Kubernetes Service."""


# --- deploy command ---


@cli.command()
@config_file_option
@container_mode_option
@click.option("--workdir", default=None, help="Directory for config.yaml and secret.yaml")
@click.option("--journal", default=None, help="Append stage outcomes to this JSON-lines file")
@click.option("--tiller/--no-tiller", "use_tiller", default=None, help="Use Helm 2 with tiller")
@click.option("--node-timeout", type=_POSITIVE_SECONDS, default=None, help="Seconds to wait for nodes to be ready")
@click.option("--ip-timeout", type=_POSITIVE_SECONDS, default=None, help="Seconds to wait for the hub IP")
@click.option("--dry-run", is_flag=True, help="Validate and print the planned commands only")
@click.option("--json-output", is_flag=True, help="Output the report as JSON")
@verbose_option
def deploy(
    config_file: str | None,
    container_mode: bool | None,
    workdir: str | None,
    journal: str | None,
    use_tiller: bool | None,
    node_timeout: float | None,
    ip_timeout: float | None,
    dry_run: bool,
    json_output: bool,
    verbose: bool,
) -> None:
    """Create an AKS cluster and install BinderHub on it."""
    _setup_logging(verbose)
    defaults = _resolve_defaults()
    if use_tiller is None:
        use_tiller = defaults.use_tiller

    try:
        source = _select(config_file, container_mode, defaults)
        settings = resolve_settings(source, use_tiller=use_tiller)
        login_mode = resolve_login_mode(os.environ)
        options = DriverOptions(
            workdir=Path(_or(workdir, defaults.workdir, ".")),
            tool_paths=_tool_paths(defaults),
            node_timeout=node_timeout or defaults.node_timeout,
            ip_timeout=ip_timeout or defaults.ip_timeout,
            tiller_timeout=defaults.tiller_timeout,
            install_timeout=defaults.install_timeout,
        )
    except DeployError as exc:
        _fail(exc)

    journal_path = journal or defaults.journal
    cancel = threading.Event()
    driver = DeploymentDriver(
        settings,
        SubprocessRunner(),
        login_mode,
        options=options,
        journal=StageJournal(journal_path) if journal_path else None,
        cancel=cancel,
    )

    if dry_run:
        try:
            commands = driver.plan()
        except DeployError as exc:
            _fail(exc)
        click.echo(
            click.style("DRY-RUN", fg="cyan", bold=True)
            + f" — {settings.hub_name} in {settings.resource_group} / {settings.cluster_name}",
        )
        for command in commands:
            click.echo(f"  {command.display}")
        return

    previous = signal.signal(signal.SIGTERM, _cancel_on_sigterm(cancel))
    try:
        report = driver.deploy()
    except DeployError as exc:
        _fail(exc, driver.report)
    except KeyboardInterrupt:
        cancel.set()
        _fail(DeploymentCancelled("Cancelled between stages"), driver.report)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if json_output:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    click.echo(click.style("DEPLOYED", fg="green", bold=True) + f" — {report.hub_name}")
    _print_report(report)
    if report.hub_ip:
        click.echo(f"  JupyterHub: http://{report.hub_ip}")


# --- teardown command ---


@cli.command("teardown")
@config_file_option
@container_mode_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--no-wait", is_flag=True, help="Return without waiting for the deletion to finish")
@verbose_option
def teardown_cmd(
    config_file: str | None,
    container_mode: bool | None,
    yes: bool,
    no_wait: bool,
    verbose: bool,
) -> None:
    """Delete the resource group holding the deployment."""
    _setup_logging(verbose)
    defaults = _resolve_defaults()
    try:
        target = resolve_target(_select(config_file, container_mode, defaults))
        login_mode = resolve_login_mode(os.environ)
    except DeployError as exc:
        _fail(exc)

    if not yes:
        click.confirm(
            f"Delete resource group {target.resource_group} and everything in it?",
            abort=True,
        )

    try:
        teardown(
            target, SubprocessRunner(), login_mode,
            wait=not no_wait, tool_paths=_tool_paths(defaults),
        )
    except DeployError as exc:
        _fail(exc)

    verb = "DELETING" if no_wait else "DELETED"
    click.echo(click.style(verb, fg="green", bold=True) + f" — {target.resource_group}")


# --- info command ---


@cli.command()
@config_file_option
@container_mode_option
@click.option("--login", is_flag=True, help="Log in and fetch cluster credentials first")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@verbose_option
def info(
    config_file: str | None,
    container_mode: bool | None,
    login: bool,
    json_output: bool,
    verbose: bool,
) -> None:
    """Show the JupyterHub and BinderHub addresses."""
    _setup_logging(verbose)
    defaults = _resolve_defaults()
    runner = SubprocessRunner()
    try:
        target = resolve_target(_select(config_file, container_mode, defaults))
        if login:
            fetch_cluster_credentials(
                target, runner, resolve_login_mode(os.environ),
                tool_paths=_tool_paths(defaults),
            )
        addresses = hub_addresses(target, runner, tool_paths=_tool_paths(defaults))
    except DeployError as exc:
        _fail(exc)

    if json_output:
        click.echo(json.dumps(addresses, indent=2))
        return

    for service, address in addresses.items():
        shown = f"http://{address}" if address else click.style("<pending>", fg="yellow")
        click.echo(f"  {service}: {shown}")


# --- logs command ---


@cli.command()
@config_file_option
@container_mode_option
@click.option("--login", is_flag=True, help="Log in and fetch cluster credentials first")
@verbose_option
def logs(
    config_file: str | None,
    container_mode: bool | None,
    login: bool,
    verbose: bool,
) -> None:
    """Show the BinderHub pod logs."""
    _setup_logging(verbose)
    defaults = _resolve_defaults()
    runner = SubprocessRunner()
    try:
        target = resolve_target(_select(config_file, container_mode, defaults))
        if login:
            fetch_cluster_credentials(
                target, runner, resolve_login_mode(os.environ),
                tool_paths=_tool_paths(defaults),
            )
        output = binder_logs(target, runner, tool_paths=_tool_paths(defaults))
    except DeployError as exc:
        _fail(exc)
    click.echo(output)


# --- names command ---


@cli.command()
@click.argument("hub_name")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def names(hub_name: str, json_output: bool) -> None:
    """Show the resource group and cluster names for HUB_NAME."""
    resource_group = derive_resource_group_name(hub_name)
    cluster_name = derive_cluster_name(hub_name)
    if json_output:
        click.echo(json.dumps({"resource_group": resource_group, "cluster_name": cluster_name}, indent=2))
        return
    click.echo(f"  resource group: {resource_group}")
    click.echo(f"  cluster:        {cluster_name}")


# --- render command ---


@cli.command()
@config_file_option
@container_mode_option
@click.option("--workdir", default=None, help="Directory to write the values files to")
@click.option("--hub-ip", default=None, help="Hub address for the final config (omit for the first pass)")
@verbose_option
def render(
    config_file: str | None,
    container_mode: bool | None,
    workdir: str | None,
    hub_ip: str | None,
    verbose: bool,
) -> None:
    """Render config.yaml and secret.yaml without touching Azure."""
    _setup_logging(verbose)
    defaults = _resolve_defaults()
    directory = _or(workdir, defaults.workdir, ".")
    try:
        settings = resolve_settings(_select(config_file, container_mode, defaults))
        config_path = write_values(directory, CONFIG_FILENAME, render_config(settings, hub_ip))
        secret_path = write_values(
            directory, SECRET_FILENAME,
            render_secret(settings, generate_token(), generate_token()),
        )
    except DeployError as exc:
        _fail(exc)
    except OSError as exc:
        click.echo(click.style("ERROR", fg="red", bold=True) + f" — {exc}", err=True)
        sys.exit(1)

    click.echo(click.style("OK", fg="green") + f"  {config_path}")
    click.echo(click.style("OK", fg="green") + f"  {secret_path}")

