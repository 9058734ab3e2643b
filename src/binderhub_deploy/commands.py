"""Typed invocation builder for the az, kubectl and helm CLIs.

Every external call the deployment makes is declared here as a
:class:`CommandTemplate`. Parameters are substituted into individual argv
entries (no shell is involved) and each value is checked against the
pattern registered for its parameter name before the command is built.
"""

from __future__ import annotations

import re
import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from binderhub_deploy.errors import CommandValidationError

CHART_REPO_NAME = "jupyterhub"
CHART_REPO_URL = "https://jupyterhub.github.io/helm-chart"
CHART_REF = f"{CHART_REPO_NAME}/binderhub"
PROXY_SERVICE = "proxy-public"
BINDER_SERVICE = "binder"

TILLER_PATCH = (
    '[{"op": "add", "path": "/spec/template/spec/containers/0/command", '
    '"value": ["/tiller", "--listen=localhost:44134"]}]'
)

REDACTED = "****"

_K8S_NAME = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_SAFE_TEXT = r"[^\x00-\x1f\x7f]+"

PARAM_PATTERNS: dict[str, re.Pattern[str]] = {
    "subscription": re.compile(_SAFE_TEXT),
    "resource_group": re.compile(r"[A-Za-z0-9_.()-]{1,90}"),
    # Short names ("westeurope") and display names ("West Europe")
    "location": re.compile(r"[A-Za-z0-9]+( [A-Za-z0-9]+)*"),
    "cluster_name": re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,62}"),
    "node_count": re.compile(r"[1-9][0-9]*"),
    "vm_size": re.compile(r"[A-Za-z0-9_]+"),
    "release": re.compile(_K8S_NAME),
    "namespace": re.compile(_K8S_NAME),
    "service": re.compile(_K8S_NAME),
    "pod": re.compile(r"[a-z0-9]([-a-z0-9.]*[a-z0-9])?"),
    "chart_version": re.compile(r"v?[0-9]+\.[0-9]+\.[0-9]+([-+][0-9A-Za-z.+-]+)?"),
    "app_id": re.compile(r"[A-Za-z0-9._:/-]+"),
    "tenant_id": re.compile(r"[A-Za-z0-9.-]+"),
    "app_key": re.compile(_SAFE_TEXT),
    "values_file": re.compile(_SAFE_TEXT),
    "timeout": re.compile(r"[1-9][0-9]*"),
}

# Helm release names are limited to 53 characters
_LENGTH_LIMITS: dict[str, int] = {"release": 53, "namespace": 63, "service": 63, "pod": 253}


@dataclass
class CommandTemplate:
    """Maps a named step to an argv for one of the external tools."""

    tool: str
    args: list[str]
    secret_params: list[str] = field(default_factory=list)
    interactive: bool = False


@dataclass(frozen=True)
class Command:
    """A validated, ready-to-run external command."""

    name: str
    args: list[str]
    display: str
    interactive: bool = False


COMMANDS: dict[str, CommandTemplate] = {
    # --- az ---
    "login-interactive": CommandTemplate(
        tool="az",
        args=["login", "-o", "none"],
        interactive=True,
    ),
    "login-service-principal": CommandTemplate(
        tool="az",
        args=[
            "login", "--service-principal",
            "-u", "{app_id}", "-p", "{app_key}", "-t", "{tenant_id}",
            "-o", "none",
        ],
        secret_params=["app_key"],
    ),
    "account-set": CommandTemplate(
        tool="az",
        args=["account", "set", "-s", "{subscription}"],
    ),
    "group-exists": CommandTemplate(
        tool="az",
        args=["group", "exists", "--name", "{resource_group}"],
    ),
    "group-create": CommandTemplate(
        tool="az",
        args=["group", "create", "-n", "{resource_group}", "--location", "{location}", "-o", "table"],
    ),
    "group-delete": CommandTemplate(
        tool="az",
        args=["group", "delete", "-n", "{resource_group}", "--yes"],
    ),
    "group-delete-no-wait": CommandTemplate(
        tool="az",
        args=["group", "delete", "-n", "{resource_group}", "--yes", "--no-wait"],
    ),
    "aks-create": CommandTemplate(
        tool="az",
        args=[
            "aks", "create", "-n", "{cluster_name}", "-g", "{resource_group}",
            "--generate-ssh-keys",
            "--node-count", "{node_count}",
            "--node-vm-size", "{vm_size}",
            "-o", "table",
        ],
    ),
    "aks-get-credentials": CommandTemplate(
        tool="az",
        args=[
            "aks", "get-credentials", "-n", "{cluster_name}", "-g", "{resource_group}",
            "--overwrite-existing", "-o", "table",
        ],
    ),
    # --- kubectl ---
    "get-nodes": CommandTemplate(
        tool="kubectl",
        args=["get", "nodes", "-o", "json"],
    ),
    "get-service": CommandTemplate(
        tool="kubectl",
        args=["--namespace={namespace}", "get", "svc", "{service}", "-o", "json"],
    ),
    "get-pods": CommandTemplate(
        tool="kubectl",
        args=["--namespace={namespace}", "get", "pods", "-o", "json"],
    ),
    "pod-logs": CommandTemplate(
        tool="kubectl",
        args=["--namespace={namespace}", "logs", "{pod}"],
    ),
    "create-tiller-account": CommandTemplate(
        tool="kubectl",
        args=["--namespace", "kube-system", "create", "serviceaccount", "tiller"],
    ),
    "bind-tiller-role": CommandTemplate(
        tool="kubectl",
        args=[
            "create", "clusterrolebinding", "tiller",
            "--clusterrole", "cluster-admin",
            "--serviceaccount=kube-system:tiller",
        ],
    ),
    "secure-tiller": CommandTemplate(
        tool="kubectl",
        args=[
            "patch", "deployment", "tiller-deploy", "--namespace=kube-system",
            "--type=json", "--patch=" + TILLER_PATCH.replace("{", "{{").replace("}", "}}"),
        ],
    ),
    "get-tiller-pods": CommandTemplate(
        tool="kubectl",
        args=["get", "pods", "--namespace", "kube-system", "-l", "app=helm,name=tiller", "-o", "json"],
    ),
    # --- helm ---
    "helm-init": CommandTemplate(
        tool="helm",
        args=["init", "--service-account", "tiller", "--wait"],
    ),
    "helm-version": CommandTemplate(
        tool="helm",
        args=["version"],
    ),
    "helm-repo-add": CommandTemplate(
        tool="helm",
        args=["repo", "add", CHART_REPO_NAME, CHART_REPO_URL],
    ),
    "helm-repo-update": CommandTemplate(
        tool="helm",
        args=["repo", "update"],
    ),
    "helm-install": CommandTemplate(
        tool="helm",
        args=[
            "install", "{release}", CHART_REF,
            "--version={chart_version}",
            "--namespace={namespace}", "--create-namespace",
            "-f", "{secret_values}", "-f", "{config_values}",
            "--timeout={timeout}s",
        ],
    ),
    "helm2-install": CommandTemplate(
        tool="helm",
        args=[
            "install", CHART_REF,
            "--version={chart_version}",
            "--name={release}",
            "--namespace={namespace}",
            "-f", "{secret_values}", "-f", "{config_values}",
            "--timeout={timeout}",
        ],
    ),
    "helm-upgrade": CommandTemplate(
        tool="helm",
        args=[
            "upgrade", "{release}", CHART_REF,
            "--version={chart_version}",
            "--namespace={namespace}",
            "-f", "{secret_values}", "-f", "{config_values}",
        ],
    ),
}


def template_params(template: CommandTemplate) -> list[str]:
    """Return the parameter names referenced by a template, in order."""
    names: list[str] = []
    for arg in template.args:
        for _, field_name, _, _ in string.Formatter().parse(arg):
            if field_name and field_name not in names:
                names.append(field_name)
    return names


def validate_param(name: str, value: Any) -> str:
    """Check one interpolated value and return it as a string.

    Raises:
        CommandValidationError: if the value is empty, looks like an
            option, or does not match the parameter's pattern.
    """
    text = str(value)
    pattern = PARAM_PATTERNS.get(_pattern_key(name))
    if pattern is None:
        raise CommandValidationError(f"No validation rule for command parameter '{name}'")
    if not text:
        raise CommandValidationError(f"Command parameter '{name}' is empty")
    if text.startswith("-"):
        raise CommandValidationError(f"Command parameter '{name}' may not start with '-': {text!r}")
    if not pattern.fullmatch(text):
        raise CommandValidationError(
            f"Invalid value for '{name}': {_shown(name, text)!r}"
        )
    limit = _LENGTH_LIMITS.get(_pattern_key(name))
    if limit is not None and len(text) > limit:
        raise CommandValidationError(
            f"Value for '{name}' exceeds {limit} characters: {text!r}"
        )
    return text


def build_command(
    name: str,
    params: Mapping[str, Any] | None = None,
    tool_paths: Mapping[str, str] | None = None,
) -> Command:
    """Build a validated command from the template registered as *name*."""
    template = COMMANDS.get(name)
    if template is None:
        raise CommandValidationError(f"No command template named: {name}")
    params = params or {}
    tool_paths = tool_paths or {}

    checked: dict[str, str] = {}
    for param in template_params(template):
        if param not in params:
            raise CommandValidationError(f"Command '{name}' requires parameter '{param}'")
        checked[param] = validate_param(param, params[param])

    masked = {
        key: REDACTED if key in template.secret_params else value
        for key, value in checked.items()
    }

    executable = tool_paths.get(template.tool, template.tool)
    args = [executable] + [arg.format(**checked) for arg in template.args]
    display = " ".join([executable] + [arg.format(**masked) for arg in template.args])
    return Command(name=name, args=args, display=display, interactive=template.interactive)


def _pattern_key(name: str) -> str:
    if name.endswith("_values"):
        return "values_file"
    return name


def _shown(name: str, text: str) -> str:
    return REDACTED if name == "app_key" else text
