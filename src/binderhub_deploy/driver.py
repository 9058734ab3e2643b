"""DeploymentDriver — sequences a BinderHub deployment on AKS.

Lifecycle of :meth:`DeploymentDriver.deploy`:
  1. Build and validate every command the run will issue
  2. Log in to Azure and select the subscription
  3. Create the resource group if it does not exist
  4. Create the AKS cluster and fetch kubectl credentials
  5. Wait until all nodes report Ready (bounded)
  6. Set up tiller (Helm 2 only)
  7. Add and update the JupyterHub chart repository
  8. Render config.yaml and secret.yaml without the hub address
  9. Install the BinderHub chart
 10. Wait until the proxy service has an external IP (bounded)
 11. Re-render config.yaml with the hub address
 12. Upgrade the release with the final values

Every stage is recorded in a :class:`DeploymentReport` (and optionally a
:class:`StageJournal`) so a failed run shows what it had already created.
"""

from __future__ import annotations

import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from binderhub_deploy.commands import (
    BINDER_SERVICE,
    PROXY_SERVICE,
    Command,
    build_command,
)
from binderhub_deploy.errors import (
    ChartInstallError,
    ClusterCreateError,
    ClusterNotReadyError,
    DeployError,
    DeploymentCancelled,
    InvalidConfig,
    LoginFailure,
    ResourceGroupError,
    ServiceIpNotAssignedError,
    TillerNotReadyError,
)
from binderhub_deploy.journal import StageJournal
from binderhub_deploy.models import (
    CommandResult,
    CredentialMode,
    DeploymentReport,
    DeploymentSettings,
    HubTarget,
    ServicePrincipalLogin,
    StageRecord,
    StageStatus,
)
from binderhub_deploy.polling import Poller
from binderhub_deploy.renderer import (
    CONFIG_FILENAME,
    SECRET_FILENAME,
    generate_token,
    render_config,
    render_secret,
    write_values,
)
from binderhub_deploy.runner.executor import CommandRunner

logger = logging.getLogger(__name__)

NODE_POLL_INTERVAL = 15.0
IP_POLL_INTERVAL = 5.0
TILLER_POLL_INTERVAL = 5.0
PENDING_ADDRESS = "<pending>"


@dataclass
class DriverOptions:
    """Tunables for a deployment run."""

    workdir: Path = field(default_factory=Path.cwd)
    tool_paths: dict[str, str] = field(default_factory=dict)
    node_timeout: float = 900.0
    ip_timeout: float = 600.0
    tiller_timeout: float = 300.0
    install_timeout: int = 3600
    node_interval: float = NODE_POLL_INTERVAL
    ip_interval: float = IP_POLL_INTERVAL
    tiller_interval: float = TILLER_POLL_INTERVAL

    def __post_init__(self) -> None:
        for name in (
            "node_timeout", "ip_timeout", "tiller_timeout", "install_timeout",
            "node_interval", "ip_interval", "tiller_interval",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise InvalidConfig(f"{name} must be positive, got {value}")


@dataclass
class _StageNote:
    detail: str = ""


# --- Output parsing ---


def count_ready_nodes(nodes_json: str) -> int:
    """Count nodes whose ``Ready`` condition is ``True`` in ``kubectl get nodes -o json``."""
    data = json.loads(nodes_json)
    ready = 0
    for node in data.get("items") or []:
        conditions = (node.get("status") or {}).get("conditions") or []
        if any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
            ready += 1
    return ready


def service_address(service_json: str) -> str | None:
    """Return the load balancer address of a service, or None while pending."""
    data = json.loads(service_json)
    balancer = (data.get("status") or {}).get("loadBalancer") or {}
    ingress = balancer.get("ingress") or []
    for entry in ingress:
        address = (entry.get("ip") or entry.get("hostname") or "").strip()
        if address and address != PENDING_ADDRESS:
            return address
    return None


def running_pod_names(pods_json: str) -> list[str]:
    data = json.loads(pods_json)
    return [
        (pod.get("metadata") or {}).get("name", "")
        for pod in data.get("items") or []
        if (pod.get("status") or {}).get("phase") == "Running"
    ]


def find_pod(pods_json: str, prefix: str) -> str | None:
    """First pod whose name starts with *prefix*, preferring running pods."""
    data = json.loads(pods_json)
    names = [(pod.get("metadata") or {}).get("name", "") for pod in data.get("items") or []]
    running = running_pod_names(pods_json)
    for name in running + names:
        if name.startswith(prefix):
            return name
    return None


# --- Shared steps ---


def run_checked(
    runner: CommandRunner,
    name: str,
    params: Mapping[str, Any],
    error_cls: type[DeployError],
    what: str,
    *,
    tool_paths: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Build and run a command, raising *error_cls* on a non-zero exit."""
    command = build_command(name, params, tool_paths)
    logger.info("%s", what)
    result = runner.run(command, timeout=timeout)
    if not result.ok:
        reason = result.stderr or result.stdout or f"exit code {result.returncode}"
        raise error_cls(f"{what} failed: {reason}")
    return result


def login_params(login_mode: CredentialMode) -> tuple[str, dict[str, str]]:
    if isinstance(login_mode, ServicePrincipalLogin):
        return "login-service-principal", {
            "app_id": login_mode.app_id,
            "app_key": login_mode.app_key,
            "tenant_id": login_mode.tenant_id,
        }
    return "login-interactive", {}


def azure_login(
    runner: CommandRunner,
    login_mode: CredentialMode,
    subscription: str,
    *,
    tool_paths: Mapping[str, str] | None = None,
) -> None:
    """Log in to Azure and activate *subscription*."""
    name, params = login_params(login_mode)
    what = (
        "Logging in to Azure with service principal"
        if isinstance(login_mode, ServicePrincipalLogin)
        else "Logging in to Azure as a user"
    )
    run_checked(runner, name, params, LoginFailure, what, tool_paths=tool_paths)
    run_checked(
        runner, "account-set", {"subscription": subscription}, LoginFailure,
        f"Activating Azure subscription {subscription}", tool_paths=tool_paths,
    )


# --- Driver ---


class DeploymentDriver:
    """Runs a full BinderHub deployment for one set of settings.

    Not reusable: create a new driver for every run.
    """

    def __init__(
        self,
        settings: DeploymentSettings,
        runner: CommandRunner,
        login_mode: CredentialMode,
        *,
        options: DriverOptions | None = None,
        journal: StageJournal | None = None,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.settings = settings
        self.options = options or DriverOptions()
        self._runner = runner
        self._login_mode = login_mode
        self._journal = journal
        self._cancel = cancel or threading.Event()
        self._clock = clock
        self._sleep = sleep
        self._token_factory = token_factory
        self._tokens: tuple[str, str] | None = None
        self.report = DeploymentReport(
            hub_name=settings.hub_name,
            resource_group=settings.resource_group,
            cluster_name=settings.cluster_name,
        )

    @property
    def config_path(self) -> Path:
        return Path(self.options.workdir) / CONFIG_FILENAME

    @property
    def secret_path(self) -> Path:
        return Path(self.options.workdir) / SECRET_FILENAME

    # --- Planning ---

    def plan(self) -> list[Command]:
        """Build every command a deployment would run, validating all values.

        Raises:
            CommandValidationError: before anything has been executed.
        """
        login_name, login_values = login_params(self._login_mode)
        names = [
            login_name,
            "account-set",
            "group-exists",
            "group-create",
            "aks-create",
            "aks-get-credentials",
            "get-nodes",
        ]
        if self.settings.use_tiller:
            names += [
                "create-tiller-account", "bind-tiller-role", "helm-init",
                "secure-tiller", "get-tiller-pods", "helm-version",
            ]
        names += [
            "helm-repo-add",
            "helm-repo-update",
            "helm2-install" if self.settings.use_tiller else "helm-install",
            "get-service",
            "helm-upgrade",
        ]
        params = {**self._params(), **login_values}
        return [build_command(name, params, self.options.tool_paths) for name in names]

    # --- Full run ---

    def deploy(self) -> DeploymentReport:
        """Run every stage in order and return the report.

        Raises:
            DeployError: from the first failing stage; ``self.report``
                still lists the stages completed before it.
        """
        self.plan()

        with self._stage("login"):
            azure_login(
                self._runner, self._login_mode, self.settings.subscription,
                tool_paths=self.options.tool_paths,
            )

        with self._stage("resource-group") as note:
            note.detail = self.ensure_resource_group()

        with self._stage("cluster"):
            self.create_cluster()

        with self._stage("credentials"):
            self.fetch_credentials()

        with self._stage("nodes-ready") as note:
            ready = self.wait_for_nodes()
            note.detail = f"{ready} nodes ready"

        if self.settings.use_tiller:
            with self._stage("tiller"):
                self.setup_tiller()
        else:
            self._record("tiller", StageStatus.SKIPPED, "Helm 3 needs no tiller")

        with self._stage("helm-repo"):
            self.add_chart_repo()

        with self._stage("render-initial"):
            self.render_initial()

        with self._stage("install"):
            self.install_chart()

        with self._stage("service-ip") as note:
            address = self.wait_for_service_ip()
            note.detail = address

        with self._stage("render-final"):
            self.render_final(address)

        with self._stage("upgrade"):
            self.upgrade_chart()

        logger.info("BinderHub %s is available at http://%s", self.settings.hub_name, address)
        return self.report

    # --- Stages ---

    def ensure_resource_group(self) -> str:
        """Create the resource group unless it exists. Returns what happened."""
        result = self._run(
            "group-exists", ResourceGroupError,
            f"Checking if resource group {self.settings.resource_group} exists",
        )
        if result.stdout.strip().lower() == "true":
            return "exists"
        self._run(
            "group-create", ResourceGroupError,
            f"Creating resource group {self.settings.resource_group}",
        )
        return "created"

    def create_cluster(self) -> None:
        self._run(
            "aks-create", ClusterCreateError,
            f"Creating AKS cluster {self.settings.cluster_name}; this may take a few minutes",
        )

    def fetch_credentials(self) -> None:
        self._run("aks-get-credentials", ClusterCreateError, "Fetching kubectl credentials from Azure")

    def wait_for_nodes(self) -> int:
        """Block until the Ready node count equals the configured node count."""
        expected = self.settings.node_count

        def probe() -> int | None:
            result = self._run_quiet("get-nodes")
            if not result.ok:
                return None
            try:
                ready = count_ready_nodes(result.stdout)
            except (json.JSONDecodeError, AttributeError, TypeError):
                logger.debug("Unparseable node list: %r", result.stdout)
                return None
            logger.debug("%d of %d nodes ready", ready, expected)
            return ready if ready == expected else None

        poller = self._poller(
            self.options.node_interval, self.options.node_timeout,
            "Waiting for all cluster nodes to be ready",
        )
        return poller.wait_until(
            probe,
            lambda attempts, elapsed: ClusterNotReadyError(
                f"Cluster {self.settings.cluster_name} did not report {expected} ready "
                f"nodes within {elapsed:.0f}s ({attempts} checks)",
                attempts=attempts,
            ),
        )

    def setup_tiller(self) -> None:
        """Install a tiller restricted to localhost and wait for it to run."""
        self._run("create-tiller-account", ChartInstallError, "Setting up tiller service account")
        self._run(
            "bind-tiller-role", ChartInstallError,
            "Giving the tiller service account permission to manage the cluster",
        )
        self._run("helm-init", ChartInstallError, "Initialising helm and tiller")
        self._run("secure-tiller", ChartInstallError, "Restricting tiller to localhost")

        def probe() -> bool | None:
            result = self._run_quiet("get-tiller-pods")
            if not result.ok:
                return None
            try:
                return True if running_pod_names(result.stdout) else None
            except (json.JSONDecodeError, AttributeError, TypeError):
                return None

        poller = self._poller(
            self.options.tiller_interval, self.options.tiller_timeout,
            "Waiting for tiller pod to be running",
        )
        poller.wait_until(
            probe,
            lambda attempts, elapsed: TillerNotReadyError(
                f"Tiller pod was not running within {elapsed:.0f}s ({attempts} checks)",
                attempts=attempts,
            ),
        )
        version = self._run("helm-version", ChartInstallError, "Checking helm client and server versions")
        logger.info("%s", version.stdout)

    def add_chart_repo(self) -> None:
        self._run("helm-repo-add", ChartInstallError, "Adding the JupyterHub chart repository")
        self._run("helm-repo-update", ChartInstallError, "Updating chart repositories")

    def render_initial(self) -> tuple[Path, Path]:
        """Write secret.yaml and the first config.yaml (no hub address yet)."""
        if self._tokens is None:
            self._tokens = (self._token_factory(), self._token_factory())
        api_token, secret_token = self._tokens
        logger.info("Generating initial configuration and secrets files")
        config_path = write_values(
            self.options.workdir, CONFIG_FILENAME, render_config(self.settings),
        )
        secret_path = write_values(
            self.options.workdir, SECRET_FILENAME,
            render_secret(self.settings, api_token, secret_token),
        )
        return config_path, secret_path

    def install_chart(self) -> None:
        name = "helm2-install" if self.settings.use_tiller else "helm-install"
        self._run(
            name, ChartInstallError,
            f"Installing BinderHub chart {self.settings.chart_version} as {self.settings.hub_name}",
            timeout=self.options.install_timeout + 60,
        )

    def wait_for_service_ip(self) -> str:
        """Block until the hub proxy service has an external address."""

        def probe() -> str | None:
            result = self._run_quiet("get-service")
            if not result.ok:
                return None
            try:
                address = service_address(result.stdout)
            except (json.JSONDecodeError, AttributeError, TypeError):
                return None
            logger.debug("JupyterHub IP: %s", address or PENDING_ADDRESS)
            return address

        poller = self._poller(
            self.options.ip_interval, self.options.ip_timeout,
            "Waiting for the JupyterHub proxy IP",
        )
        address = poller.wait_until(
            probe,
            lambda attempts, elapsed: ServiceIpNotAssignedError(
                f"Service {PROXY_SERVICE} in namespace {self.settings.hub_name} had no "
                f"external IP within {elapsed:.0f}s ({attempts} checks)",
                attempts=attempts,
            ),
        )
        self.report.hub_ip = address
        return address

    def render_final(self, discovered_ip: str) -> Path:
        logger.info("Finalising configuration with hub address %s", discovered_ip)
        return write_values(
            self.options.workdir, CONFIG_FILENAME,
            render_config(self.settings, discovered_ip),
        )

    def upgrade_chart(self) -> None:
        self._run(
            "helm-upgrade", ChartInstallError,
            f"Updating BinderHub release {self.settings.hub_name}",
            timeout=self.options.install_timeout + 60,
        )

    # --- Helpers ---

    def _params(self) -> dict[str, Any]:
        s = self.settings
        return {
            "subscription": s.subscription,
            "resource_group": s.resource_group,
            "location": s.location,
            "cluster_name": s.cluster_name,
            "node_count": s.node_count,
            "vm_size": s.vm_size,
            "release": s.hub_name,
            "namespace": s.hub_name,
            "service": PROXY_SERVICE,
            "chart_version": s.chart_version,
            "secret_values": str(self.secret_path),
            "config_values": str(self.config_path),
            "timeout": self.options.install_timeout,
        }

    def _run(
        self,
        name: str,
        error_cls: type[DeployError],
        what: str,
        timeout: float | None = None,
    ) -> CommandResult:
        return run_checked(
            self._runner, name, self._params(), error_cls, what,
            tool_paths=self.options.tool_paths, timeout=timeout,
        )

    def _run_quiet(self, name: str) -> CommandResult:
        command = build_command(name, self._params(), self.options.tool_paths)
        return self._runner.run(command, timeout=60)

    def _poller(self, interval: float, timeout: float, description: str) -> Poller:
        return Poller(
            interval, timeout,
            description=description,
            cancel=self._cancel,
            clock=self._clock,
            sleep=self._sleep,
        )

    @contextlib.contextmanager
    def _stage(self, name: str) -> Iterator[_StageNote]:
        note = _StageNote()
        try:
            if self._cancel.is_set():
                raise DeploymentCancelled(f"Cancelled before stage {name}", stage=name)
            yield note
        except DeployError as exc:
            if exc.stage is None:
                exc.stage = name
            self._record(name, StageStatus.FAILED, str(exc))
            raise
        except KeyboardInterrupt:
            self._record(name, StageStatus.FAILED, "cancelled")
            raise DeploymentCancelled(f"Cancelled during stage {name}", stage=name) from None
        except OSError as exc:
            self._record(name, StageStatus.FAILED, str(exc))
            raise DeployError(f"Stage {name} failed: {exc}", stage=name) from exc
        self._record(name, StageStatus.COMPLETED, note.detail)

    def _record(self, name: str, status: StageStatus, detail: str = "") -> None:
        record = StageRecord(
            name=name, status=status, detail=detail, finished_at=datetime.now(tz=UTC),
        )
        self.report.stages.append(record)
        if self._journal is not None:
            self._journal.record(self.settings.hub_name, record)


# --- Operations on an existing deployment ---


def teardown(
    target: HubTarget,
    runner: CommandRunner,
    login_mode: CredentialMode,
    *,
    wait: bool = True,
    tool_paths: Mapping[str, str] | None = None,
) -> None:
    """Delete the deployment's resource group and everything in it."""
    name = "group-delete" if wait else "group-delete-no-wait"
    # Validate before logging in
    build_command(name, {"resource_group": target.resource_group}, tool_paths)
    azure_login(runner, login_mode, target.subscription, tool_paths=tool_paths)
    run_checked(
        runner, name, {"resource_group": target.resource_group}, ResourceGroupError,
        f"Deleting resource group {target.resource_group}", tool_paths=tool_paths,
    )


def fetch_cluster_credentials(
    target: HubTarget,
    runner: CommandRunner,
    login_mode: CredentialMode,
    *,
    tool_paths: Mapping[str, str] | None = None,
) -> None:
    """Log in and point kubectl at the deployment's cluster."""
    azure_login(runner, login_mode, target.subscription, tool_paths=tool_paths)
    run_checked(
        runner, "aks-get-credentials",
        {"cluster_name": target.cluster_name, "resource_group": target.resource_group},
        ClusterCreateError, "Fetching kubectl credentials from Azure", tool_paths=tool_paths,
    )


def hub_addresses(
    target: HubTarget,
    runner: CommandRunner,
    *,
    tool_paths: Mapping[str, str] | None = None,
) -> dict[str, str | None]:
    """External addresses of the JupyterHub proxy and BinderHub services."""
    addresses: dict[str, str | None] = {}
    for service in (PROXY_SERVICE, BINDER_SERVICE):
        command = build_command(
            "get-service", {"namespace": target.hub_name, "service": service}, tool_paths,
        )
        result = runner.run(command, timeout=60)
        address = None
        if result.ok:
            with contextlib.suppress(json.JSONDecodeError, AttributeError, TypeError):
                address = service_address(result.stdout)
        addresses[service] = address
    return addresses


def binder_logs(
    target: HubTarget,
    runner: CommandRunner,
    *,
    tool_paths: Mapping[str, str] | None = None,
) -> str:
    """Return the logs of the BinderHub pod in the hub namespace."""
    pods = run_checked(
        runner, "get-pods", {"namespace": target.hub_name}, ClusterCreateError,
        f"Listing pods in namespace {target.hub_name}", tool_paths=tool_paths,
    )
    try:
        pod = find_pod(pods.stdout, f"{BINDER_SERVICE}-")
    except (json.JSONDecodeError, AttributeError, TypeError) as exc:
        raise ClusterCreateError(f"Unexpected pod listing from kubectl: {exc}") from exc
    if pod is None:
        raise ClusterCreateError(f"No BinderHub pod found in namespace {target.hub_name}")
    logs = run_checked(
        runner, "pod-logs", {"namespace": target.hub_name, "pod": pod}, ClusterCreateError,
        f"Fetching logs of pod {pod}", tool_paths=tool_paths,
    )
    return logs.stdout
