"""Tests for the deployment driver and the existing-deployment operations."""

from __future__ import annotations

import itertools
import json
import threading
from pathlib import Path

import pytest
import yaml

from binderhub_deploy.driver import (
    DeploymentDriver,
    DriverOptions,
    binder_logs,
    count_ready_nodes,
    fetch_cluster_credentials,
    find_pod,
    hub_addresses,
    running_pod_names,
    service_address,
    teardown,
)
from binderhub_deploy.errors import (
    ChartInstallError,
    ClusterCreateError,
    ClusterNotReadyError,
    CommandValidationError,
    DeploymentCancelled,
    InvalidConfig,
    LoginFailure,
    ServiceIpNotAssignedError,
)
from binderhub_deploy.journal import StageJournal
from binderhub_deploy.models import (
    CommandResult,
    DeploymentSettings,
    HubTarget,
    InteractiveLogin,
    ServicePrincipalLogin,
    StageStatus,
)
from binderhub_deploy.runner.executor import RecordingRunner

HELM3_STAGES = [
    "login",
    "resource-group",
    "cluster",
    "credentials",
    "nodes-ready",
    "tiller",
    "helm-repo",
    "render-initial",
    "install",
    "service-ip",
    "render-final",
    "upgrade",
]


def _make_settings(**overrides) -> DeploymentSettings:
    defaults = {
        "subscription": "sub-123",
        "resource_group": "turing_RG",
        "location": "westeurope",
        "cluster_name": "turing-AKS",
        "node_count": 3,
        "vm_size": "Standard_D2s_v3",
        "hub_name": "turing",
        "chart_version": "0.2.0-n361.h6f57706",
        "docker_id": "dockeruser",
        "docker_password": "secret",
        "image_prefix": "binder-dev",
    }
    defaults.update(overrides)
    return DeploymentSettings(**defaults)


def _nodes(*ready: bool) -> str:
    items = [
        {
            "metadata": {"name": f"aks-node-{i}"},
            "status": {"conditions": [
                {"type": "MemoryPressure", "status": "False"},
                {"type": "Ready", "status": "True" if flag else "False"},
            ]},
        }
        for i, flag in enumerate(ready)
    ]
    return json.dumps({"items": items})


def _service(address: str | None) -> str:
    ingress = [{"ip": address}] if address else []
    return json.dumps({"metadata": {"name": "proxy-public"}, "status": {"loadBalancer": {"ingress": ingress}}})


def _pods(*pods: tuple[str, str]) -> str:
    return json.dumps({"items": [
        {"metadata": {"name": name}, "status": {"phase": phase}} for name, phase in pods
    ]})


def _failed(stderr: str) -> CommandResult:
    return CommandResult(args=[], returncode=1, stderr=stderr)


def _happy_replies(**extra) -> dict:
    replies = {
        "group-exists": ["false"],
        "get-nodes": [_nodes(True, True, True)],
        "get-service": [_service("20.1.2.3")],
    }
    replies.update(extra)
    return replies


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class CancellingRunner(RecordingRunner):
    """Sets the cancel event while the command named *on* runs."""

    def __init__(self, cancel: threading.Event, on: str, replies=None) -> None:
        super().__init__(replies)
        self._cancel = cancel
        self._on = on

    def run(self, command, timeout=None) -> CommandResult:
        result = super().run(command, timeout)
        if command.name == self._on:
            self._cancel.set()
        return result


class InterruptingRunner(RecordingRunner):
    """Raises KeyboardInterrupt from the command named *on*, as SIGINT would."""

    def __init__(self, on: str, replies=None) -> None:
        super().__init__(replies)
        self._on = on

    def run(self, command, timeout=None) -> CommandResult:
        result = super().run(command, timeout)
        if command.name == self._on:
            raise KeyboardInterrupt
        return result


def _make_driver(
    tmp_path: Path,
    runner: RecordingRunner,
    settings: DeploymentSettings | None = None,
    login_mode=None,
    **kwargs,
) -> DeploymentDriver:
    tokens = (f"token-{i}" for i in itertools.count())
    clock = kwargs.pop("clock", None) or FakeClock()
    return DeploymentDriver(
        settings or _make_settings(),
        runner,
        login_mode or InteractiveLogin(),
        options=DriverOptions(workdir=tmp_path),
        clock=clock,
        sleep=clock.sleep,
        token_factory=lambda: next(tokens),
        **kwargs,
    )


# --- Output parsing ---


class TestParsing:
    def test_count_ready_nodes(self) -> None:
        assert count_ready_nodes(_nodes(True, False, True)) == 2
        assert count_ready_nodes(json.dumps({"items": []})) == 0

    def test_node_without_conditions(self) -> None:
        assert count_ready_nodes(json.dumps({"items": [{"status": {}}]})) == 0

    def test_service_address(self) -> None:
        assert service_address(_service("20.1.2.3")) == "20.1.2.3"
        assert service_address(_service(None)) is None
        assert service_address(_service("<pending>")) is None
        assert service_address(json.dumps({})) is None

    def test_service_hostname(self) -> None:
        data = {"status": {"loadBalancer": {"ingress": [{"hostname": "hub.example.org"}]}}}
        assert service_address(json.dumps(data)) == "hub.example.org"

    def test_find_pod_prefers_running(self) -> None:
        pods = _pods(("binder-old", "Pending"), ("hub-1", "Running"), ("binder-new", "Running"))
        assert find_pod(pods, "binder-") == "binder-new"
        assert find_pod(pods, "proxy-") is None

    def test_null_lists_parse_as_empty(self) -> None:
        assert count_ready_nodes(json.dumps({"items": None})) == 0
        assert count_ready_nodes(json.dumps({"items": [{"status": None}]})) == 0
        assert service_address(json.dumps({"status": {"loadBalancer": None}})) is None
        assert running_pod_names(json.dumps({"items": None})) == []
        assert find_pod(json.dumps({"items": None}), "binder-") is None


# --- Options ---


class TestDriverOptions:
    @pytest.mark.parametrize(
        "field_name",
        ["node_timeout", "ip_timeout", "tiller_timeout", "install_timeout", "node_interval", "ip_interval"],
    )
    @pytest.mark.parametrize("value", [0, -1])
    def test_rejects_non_positive(self, field_name: str, value: int) -> None:
        with pytest.raises(InvalidConfig, match=field_name):
            DriverOptions(**{field_name: value})


# --- Full deployment ---


class TestDeploy:
    def test_stage_order_helm3(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies())
        driver = _make_driver(tmp_path, runner)

        report = driver.deploy()

        assert [s.name for s in report.stages] == HELM3_STAGES
        assert report.failed_stage is None
        assert report.hub_ip == "20.1.2.3"
        tiller = next(s for s in report.stages if s.name == "tiller")
        assert tiller.status == StageStatus.SKIPPED
        assert runner.names == [
            "login-interactive",
            "account-set",
            "group-exists",
            "group-create",
            "aks-create",
            "aks-get-credentials",
            "get-nodes",
            "helm-repo-add",
            "helm-repo-update",
            "helm-install",
            "get-service",
            "helm-upgrade",
        ]

    def test_existing_resource_group_not_recreated(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{"group-exists": ["true"]}))
        report = _make_driver(tmp_path, runner).deploy()

        assert runner.count("group-create") == 0
        rg = next(s for s in report.stages if s.name == "resource-group")
        assert rg.detail == "exists"

    def test_waits_for_all_nodes(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{
            "get-nodes": [_nodes(True, True, False), _nodes(True, True, True)],
        }))
        _make_driver(tmp_path, runner).deploy()

        assert runner.count("get-nodes") == 2
        assert runner.names.index("helm-install") > runner.names.index("get-nodes")

    def test_waits_for_hub_ip_and_finalises_config(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{
            "get-service": [_service(None), _service("<pending>"), _service(None), _service("20.1.2.3")],
        }))
        driver = _make_driver(tmp_path, runner)
        driver.deploy()

        assert runner.count("get-service") == 4
        config = yaml.safe_load(driver.config_path.read_text())
        assert config["config"]["BinderHub"]["hub_url"] == "http://20.1.2.3"
        assert runner.names[-1] == "helm-upgrade"

    def test_values_files_passed_to_helm(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies())
        driver = _make_driver(tmp_path, runner)
        driver.deploy()

        install = next(c for c in runner.commands if c.name == "helm-install")
        assert str(tmp_path / "secret.yaml") in install.args
        assert str(tmp_path / "config.yaml") in install.args
        assert "turing" in install.args

    def test_tokens_generated_once(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies())
        driver = _make_driver(tmp_path, runner)
        driver.deploy()

        secret = yaml.safe_load(driver.secret_path.read_text())
        assert secret["jupyterhub"]["hub"]["services"]["binder"]["apiToken"] == "token-0"
        assert secret["jupyterhub"]["proxy"]["secretToken"] == "token-1"
        assert secret["registry"]["password"] == "secret"

    def test_service_principal_login(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies())
        login = ServicePrincipalLogin(app_id="app", app_key="hunter2", tenant_id="tenant")
        _make_driver(tmp_path, runner, login_mode=login).deploy()

        first = runner.commands[0]
        assert first.name == "login-service-principal"
        assert "hunter2" in first.args
        assert "hunter2" not in first.display

    def test_tiller_mode(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{
            "get-tiller-pods": [_pods(), _pods(("tiller-deploy-abc", "Running"))],
        }))
        report = _make_driver(tmp_path, runner, settings=_make_settings(use_tiller=True)).deploy()

        tiller = next(s for s in report.stages if s.name == "tiller")
        assert tiller.status == StageStatus.COMPLETED
        assert runner.count("get-tiller-pods") == 2
        assert runner.count("helm2-install") == 1
        assert runner.count("helm-install") == 0
        names = runner.names
        assert names.index("secure-tiller") < names.index("helm-repo-add")

    def test_journal_records_stages(self, tmp_path: Path) -> None:
        journal = StageJournal(tmp_path / "journal.jsonl", run_id="run-1")
        runner = RecordingRunner(_happy_replies())
        _make_driver(tmp_path, runner, journal=journal).deploy()

        entries = journal.read_entries("run-1")
        assert [e["name"] for e in entries] == HELM3_STAGES
        assert all(e["hub_name"] == "turing" for e in entries)


# --- Failures ---


class TestDeployFailures:
    def test_invalid_hub_name_fails_before_any_command(self, tmp_path: Path) -> None:
        runner = RecordingRunner()
        driver = _make_driver(tmp_path, runner, settings=_make_settings(hub_name="Turing Hub"))

        with pytest.raises(CommandValidationError) as exc_info:
            driver.deploy()

        assert exc_info.value.exit_code == 2
        assert runner.commands == []
        assert driver.report.stages == []

    def test_login_failure(self, tmp_path: Path) -> None:
        runner = RecordingRunner({"login-interactive": [_failed("AADSTS50076: MFA required")]})
        driver = _make_driver(tmp_path, runner)

        with pytest.raises(LoginFailure, match="AADSTS50076") as exc_info:
            driver.deploy()

        assert exc_info.value.stage == "login"
        assert exc_info.value.exit_code == 3
        assert driver.report.completed_stages == []
        assert driver.report.failed_stage == "login"
        assert runner.names == ["login-interactive"]

    def test_cluster_failure_reports_completed_stages(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{"aks-create": [_failed("QuotaExceeded")]}))
        driver = _make_driver(tmp_path, runner)

        with pytest.raises(ClusterCreateError) as exc_info:
            driver.deploy()

        assert exc_info.value.stage == "cluster"
        assert driver.report.completed_stages == ["login", "resource-group"]
        assert "aks-get-credentials" not in runner.names

    def test_nodes_never_ready(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{"get-nodes": [_nodes(True, False, False)]}))
        driver = _make_driver(tmp_path, runner)

        with pytest.raises(ClusterNotReadyError) as exc_info:
            driver.deploy()

        assert exc_info.value.stage == "nodes-ready"
        assert exc_info.value.exit_code == 5
        # 900s timeout at a 15s interval
        assert runner.count("get-nodes") == 61
        assert "helm-install" not in runner.names

    def test_failed_node_listing_keeps_polling(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{
            "get-nodes": [_failed("connection refused"), "not json", _nodes(True, True, True)],
        }))
        _make_driver(tmp_path, runner).deploy()
        assert runner.count("get-nodes") == 3

    def test_service_ip_never_assigned(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{"get-service": [_service(None)]}))
        driver = _make_driver(tmp_path, runner)

        with pytest.raises(ServiceIpNotAssignedError):
            driver.deploy()

        assert driver.report.failed_stage == "service-ip"
        assert "install" in driver.report.completed_stages
        assert runner.count("helm-upgrade") == 0

    def test_install_failure(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{"helm-install": [_failed("chart not found")]}))
        with pytest.raises(ChartInstallError) as exc_info:
            _make_driver(tmp_path, runner).deploy()
        assert exc_info.value.exit_code == 6

    def test_cancelled_before_start_runs_nothing(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        cancel.set()
        runner = RecordingRunner(_happy_replies())
        driver = _make_driver(tmp_path, runner, cancel=cancel)

        with pytest.raises(DeploymentCancelled) as exc_info:
            driver.deploy()

        assert exc_info.value.stage == "login"
        assert exc_info.value.exit_code == 130
        assert runner.commands == []

    def test_cancel_during_command_stops_later_stages(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        runner = CancellingRunner(cancel, "helm-repo-update", _happy_replies())
        driver = _make_driver(tmp_path, runner, cancel=cancel)

        with pytest.raises(DeploymentCancelled) as exc_info:
            driver.deploy()

        assert runner.names[-1] == "helm-repo-update"
        assert "helm-install" not in runner.names
        assert exc_info.value.stage == "render-initial"
        assert "helm-repo" in driver.report.completed_stages
        assert not driver.config_path.exists()

    def test_cancel_during_node_wait(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        runner = CancellingRunner(
            cancel, "get-nodes", _happy_replies(**{"get-nodes": [_nodes(True, False, False)]}),
        )
        driver = _make_driver(tmp_path, runner, cancel=cancel)

        with pytest.raises(DeploymentCancelled):
            driver.deploy()

        assert runner.count("get-nodes") == 1
        assert driver.report.failed_stage == "nodes-ready"

    def test_interrupted_command_is_cancellation(self, tmp_path: Path) -> None:
        runner = InterruptingRunner("helm-install", _happy_replies())
        driver = _make_driver(tmp_path, runner)

        with pytest.raises(DeploymentCancelled) as exc_info:
            driver.deploy()

        assert exc_info.value.stage == "install"
        assert driver.report.failed_stage == "install"
        assert runner.count("helm-upgrade") == 0

    def test_null_node_list_keeps_polling(self, tmp_path: Path) -> None:
        runner = RecordingRunner(_happy_replies(**{
            "get-nodes": [json.dumps({"items": None}), _nodes(True, True, True)],
        }))
        _make_driver(tmp_path, runner).deploy()
        assert runner.count("get-nodes") == 2

    def test_failed_stage_is_journaled(self, tmp_path: Path) -> None:
        journal = StageJournal(tmp_path / "journal.jsonl")
        runner = RecordingRunner({"login-interactive": [_failed("denied")]})
        with pytest.raises(LoginFailure):
            _make_driver(tmp_path, runner, journal=journal).deploy()

        (entry,) = journal.read_entries()
        assert entry["name"] == "login"
        assert entry["status"] == "failed"


# --- Plan ---


class TestPlan:
    def test_plan_runs_nothing(self, tmp_path: Path) -> None:
        runner = RecordingRunner()
        commands = _make_driver(tmp_path, runner).plan()

        assert runner.commands == []
        assert commands[0].name == "login-interactive"
        assert commands[-1].name == "helm-upgrade"

    def test_plan_includes_tiller(self, tmp_path: Path) -> None:
        commands = _make_driver(
            tmp_path, RecordingRunner(), settings=_make_settings(use_tiller=True),
        ).plan()
        names = [c.name for c in commands]
        assert "helm-init" in names
        assert "helm2-install" in names


# --- Existing deployments ---


def _target() -> HubTarget:
    return HubTarget(
        subscription="sub-123", resource_group="turing_RG",
        cluster_name="turing-AKS", hub_name="turing",
    )


class TestOperations:
    def test_teardown(self) -> None:
        runner = RecordingRunner()
        teardown(_target(), runner, InteractiveLogin())

        assert runner.names == ["login-interactive", "account-set", "group-delete"]
        assert runner.commands[-1].args[-1] == "--yes"

    def test_teardown_no_wait(self) -> None:
        runner = RecordingRunner()
        teardown(_target(), runner, InteractiveLogin(), wait=False)
        assert runner.commands[-1].args[-1] == "--no-wait"

    def test_teardown_validates_before_login(self) -> None:
        runner = RecordingRunner()
        target = _target().model_copy(update={"resource_group": "bad name$"})
        with pytest.raises(CommandValidationError):
            teardown(target, runner, InteractiveLogin())
        assert runner.commands == []

    def test_fetch_cluster_credentials(self) -> None:
        runner = RecordingRunner()
        fetch_cluster_credentials(_target(), runner, InteractiveLogin())
        assert runner.names[-1] == "aks-get-credentials"
        assert "turing-AKS" in runner.commands[-1].args

    def test_hub_addresses(self) -> None:
        runner = RecordingRunner({"get-service": [_service("20.1.2.3"), _service(None)]})
        addresses = hub_addresses(_target(), runner)
        assert addresses == {"proxy-public": "20.1.2.3", "binder": None}

    def test_binder_logs(self) -> None:
        runner = RecordingRunner({
            "get-pods": [_pods(("hub-abc", "Running"), ("binder-xyz", "Running"))],
            "pod-logs": ["[I binderhub] listening"],
        })
        assert binder_logs(_target(), runner) == "[I binderhub] listening"
        assert "binder-xyz" in runner.commands[-1].args

    def test_binder_logs_without_pod(self) -> None:
        runner = RecordingRunner({"get-pods": [_pods(("hub-abc", "Running"))]})
        with pytest.raises(ClusterCreateError, match="No BinderHub pod"):
            binder_logs(_target(), runner)
