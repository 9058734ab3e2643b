"""Configuration resolution for binderhub-deploy.

Two input modes are supported and never mixed:

- **Container mode** — every setting comes from environment variables;
  all of ``REQUIRED_CONTAINER_VARS`` must be non-empty.
- **Interactive mode** — settings come from ``config.json``; Docker
  credentials are taken from the file and the secret file, falling back
  to prompting the user.

The mode is chosen once at the program boundary by :func:`select_source`
and resolved into a :class:`DeploymentSettings` by :func:`resolve_settings`
before any cloud call is made.

Tool defaults (timeouts, working directory, CLI paths) live in an optional
``binderhub-deploy.yaml`` discovered in the current directory or its parents.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import click
import yaml
from pydantic import ValidationError

from binderhub_deploy.errors import InvalidConfig, MissingRequiredConfig
from binderhub_deploy.models import ConfigDocument, DeploymentSettings, HubTarget
from binderhub_deploy.names import derive_names

CONTAINER_MODE_VAR = "BINDERHUB_CONTAINER_MODE"

REQUIRED_CONTAINER_VARS: tuple[str, ...] = (
    "SP_APP_ID",
    "SP_APP_KEY",
    "SP_TENANT_ID",
    "RESOURCE_GROUP_NAME",
    "RESOURCE_GROUP_LOCATION",
    "AZURE_SUBSCRIPTION",
    "BINDERHUB_NAME",
    "BINDERHUB_VERSION",
    "AKS_NODE_COUNT",
    "AKS_NODE_VM_SIZE",
    "CONTACT_EMAIL",
    "DOCKER_USERNAME",
    "DOCKER_PASSWORD",
    "DOCKER_IMAGE_PREFIX",
    "DOCKER_ORGANISATION",
)

DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_SECRET_FILE = "~/.secret/BinderHub.json"
DEFAULTS_FILENAME = "binderhub-deploy.yaml"

PromptFn = Callable[[str, bool], str]


# --- Input sources ---


@dataclass(frozen=True)
class ContainerConfig:
    """Settings supplied entirely through environment variables."""

    env: Mapping[str, str]
    kind: Literal["container"] = "container"


@dataclass(frozen=True)
class InteractiveConfig:
    """Settings supplied through ``config.json`` plus user prompts."""

    document: ConfigDocument
    config_path: Path | None = None
    kind: Literal["interactive"] = "interactive"


ConfigSource = ContainerConfig | InteractiveConfig


def is_container_mode(env: Mapping[str, str]) -> bool:
    return bool((env.get(CONTAINER_MODE_VAR) or "").strip())


def select_source(
    env: Mapping[str, str],
    config_file: str | Path = DEFAULT_CONFIG_FILE,
    *,
    container_mode: bool | None = None,
) -> ConfigSource:
    """Pick the input mode once, at startup.

    *container_mode* overrides detection via ``BINDERHUB_CONTAINER_MODE``.
    """
    if container_mode is None:
        container_mode = is_container_mode(env)
    if container_mode:
        return ContainerConfig(env=dict(env))
    path = Path(config_file)
    return InteractiveConfig(document=load_config_document(path), config_path=path)


def load_config_document(path: str | Path) -> ConfigDocument:
    """Read and validate a ``config.json`` file."""
    config_path = Path(path)
    if not config_path.is_file():
        raise InvalidConfig(f"Config file not found: {config_path}")
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidConfig(f"Config file is not valid JSON: {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidConfig(
            f"Expected a JSON object in {config_path}, got {type(data).__name__}"
        )
    try:
        return ConfigDocument.model_validate(data)
    except ValidationError as exc:
        raise InvalidConfig(f"Invalid config file {config_path}: {exc}") from exc


def load_secret_password(path: str | Path) -> str | None:
    """Return the ``password`` entry of a secret file, or None if absent."""
    secret_path = Path(path).expanduser()
    if not secret_path.is_file():
        return None
    try:
        data = json.loads(secret_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidConfig(f"Secret file is not valid JSON: {secret_path}") from exc
    if not isinstance(data, dict):
        raise InvalidConfig(f"Expected a JSON object in {secret_path}")
    password = data.get("password")
    return str(password) if password else None


def click_prompt(text: str, hide_input: bool) -> str:
    """Prompt on the terminal; hidden input is not echoed."""
    return click.prompt(text, hide_input=hide_input, type=str)


# --- Resolution ---


def resolve_settings(
    source: ConfigSource,
    *,
    prompt: PromptFn | None = None,
    use_tiller: bool = False,
) -> DeploymentSettings:
    """Resolve a config source into validated deployment settings.

    Raises:
        MissingRequiredConfig: naming the first required key that is
            missing or empty.
        InvalidConfig: if a value is present but unusable.
    """
    if isinstance(source, ContainerConfig):
        fields = _resolve_container(source.env)
    else:
        fields = _resolve_interactive(source.document, prompt or click_prompt)
    fields["use_tiller"] = use_tiller

    try:
        return DeploymentSettings(**fields)
    except ValidationError as exc:
        raise InvalidConfig(f"Invalid deployment settings: {exc}") from exc


def resolve_target(source: ConfigSource) -> HubTarget:
    """Resolve only what is needed to reach an existing deployment.

    Used by teardown, logs and info, which need no Docker credentials.
    """
    if isinstance(source, ContainerConfig):
        values: dict[str, str] = {}
        for key in ("AZURE_SUBSCRIPTION", "RESOURCE_GROUP_NAME", "BINDERHUB_NAME"):
            value = (source.env.get(key) or "").strip()
            if not value:
                raise MissingRequiredConfig(key, context="for container-based setup")
            values[key] = value
        names = derive_names(values["BINDERHUB_NAME"])
        return HubTarget(
            subscription=values["AZURE_SUBSCRIPTION"],
            resource_group=values["RESOURCE_GROUP_NAME"],
            cluster_name=names.cluster_name,
            hub_name=values["BINDERHUB_NAME"],
        )

    doc = source.document
    for key, value in (("azure.subscription", doc.azure.subscription), ("binderhub.name", doc.binderhub.name)):
        if not value.strip():
            raise MissingRequiredConfig(key, context="in the config file")
    names = derive_names(doc.binderhub.name)
    return HubTarget(
        subscription=doc.azure.subscription.strip(),
        resource_group=names.resource_group,
        cluster_name=names.cluster_name,
        hub_name=doc.binderhub.name.strip(),
    )


def _resolve_container(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, str] = {}
    for key in REQUIRED_CONTAINER_VARS:
        value = (env.get(key) or "").strip()
        if not value:
            raise MissingRequiredConfig(key, context="for container-based setup")
        values[key] = value

    names = derive_names(values["BINDERHUB_NAME"])
    return {
        "subscription": values["AZURE_SUBSCRIPTION"],
        "resource_group": values["RESOURCE_GROUP_NAME"],
        "location": values["RESOURCE_GROUP_LOCATION"],
        "cluster_name": names.cluster_name,
        "node_count": _parse_node_count(values["AKS_NODE_COUNT"], "AKS_NODE_COUNT"),
        "vm_size": values["AKS_NODE_VM_SIZE"],
        "hub_name": values["BINDERHUB_NAME"],
        "chart_version": values["BINDERHUB_VERSION"],
        "docker_id": values["DOCKER_USERNAME"],
        "docker_org": values["DOCKER_ORGANISATION"],
        "docker_password": values["DOCKER_PASSWORD"],
        "image_prefix": values["DOCKER_IMAGE_PREFIX"],
        "contact_email": values["CONTACT_EMAIL"],
    }


def _resolve_interactive(doc: ConfigDocument, prompt: PromptFn) -> dict[str, Any]:
    required = {
        "azure.subscription": doc.azure.subscription,
        "azure.location": doc.azure.location,
        "azure.vm_size": doc.azure.vm_size,
        "binderhub.name": doc.binderhub.name,
        "binderhub.version": doc.binderhub.version,
        "docker.image_prefix": doc.docker.image_prefix,
    }
    for key, value in required.items():
        if not value.strip():
            raise MissingRequiredConfig(key, context="in the config file")
    if doc.azure.node_count is None:
        raise MissingRequiredConfig("azure.node_count", context="in the config file")

    # Resource group and cluster names always follow the hub name here
    names = derive_names(doc.binderhub.name)

    docker_id = doc.docker.id.strip()
    if not docker_id:
        docker_id = prompt(
            "DockerHub ID (must be a member of the DockerHub organisation, if one is set)",
            False,
        ).strip()
    if not docker_id:
        raise MissingRequiredConfig("docker.id", context="or entered at the prompt")

    secret_file = doc.secret_file or DEFAULT_SECRET_FILE
    password = load_secret_password(secret_file)
    if password is None:
        password = prompt("DockerHub password", True)
    if not password:
        raise MissingRequiredConfig("password", context=f"in {secret_file} or entered at the prompt")

    return {
        "subscription": doc.azure.subscription.strip(),
        "resource_group": names.resource_group,
        "location": doc.azure.location.strip(),
        "cluster_name": names.cluster_name,
        "node_count": doc.azure.node_count,
        "vm_size": doc.azure.vm_size.strip(),
        "hub_name": doc.binderhub.name.strip(),
        "chart_version": doc.binderhub.version.strip(),
        "docker_id": docker_id,
        "docker_org": (doc.docker.org or "").strip() or None,
        "docker_password": password,
        "image_prefix": doc.docker.image_prefix.strip(),
        "secret_file": secret_file,
    }


def _parse_node_count(raw: str, key: str) -> int:
    try:
        count = int(raw)
    except ValueError:
        raise InvalidConfig(f"{key} must be a positive integer, got {raw!r}") from None
    if count < 1:
        raise InvalidConfig(f"{key} must be a positive integer, got {raw!r}")
    return count


# --- Tool defaults file ---


@dataclass(frozen=True)
class ToolDefaults:
    """Parsed ``binderhub-deploy.yaml`` tool defaults."""

    defaults_path: Path | None = None
    config_file: str | None = None
    workdir: str | None = None
    journal: str | None = None
    az_path: str = "az"
    kubectl_path: str = "kubectl"
    helm_path: str = "helm"
    node_timeout: float = 900.0
    ip_timeout: float = 600.0
    tiller_timeout: float = 300.0
    install_timeout: int = 3600
    use_tiller: bool = False


def find_defaults(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``binderhub-deploy.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / DEFAULTS_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_defaults(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> ToolDefaults:
    """Load tool defaults.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``ToolDefaults`` (all defaults).
    """
    defaults_path: Path | None = None

    if path is not None:
        defaults_path = Path(path).resolve()
        if not defaults_path.is_file():
            msg = f"Defaults file not found: {defaults_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        defaults_path = find_defaults()

    if defaults_path is None:
        return ToolDefaults()

    return _parse_defaults(defaults_path)


def _parse_defaults(defaults_path: Path) -> ToolDefaults:
    """Read a YAML defaults file, resolving relative paths against it."""
    text = defaults_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {defaults_path}, got {type(data).__name__}"
        raise ValueError(msg)

    base = defaults_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if val is None:
            return None
        return str((base / str(val)).resolve())

    base_defaults = ToolDefaults()
    return ToolDefaults(
        defaults_path=defaults_path,
        config_file=_resolve("config_file"),
        workdir=_resolve("workdir"),
        journal=_resolve("journal"),
        az_path=data.get("az_path", base_defaults.az_path),
        kubectl_path=data.get("kubectl_path", base_defaults.kubectl_path),
        helm_path=data.get("helm_path", base_defaults.helm_path),
        node_timeout=_positive(data, "node_timeout", base_defaults.node_timeout, defaults_path),
        ip_timeout=_positive(data, "ip_timeout", base_defaults.ip_timeout, defaults_path),
        tiller_timeout=_positive(data, "tiller_timeout", base_defaults.tiller_timeout, defaults_path),
        install_timeout=int(
            _positive(data, "install_timeout", base_defaults.install_timeout, defaults_path)
        ),
        use_tiller=bool(data.get("use_tiller", base_defaults.use_tiller)),
    )


def _positive(data: dict[str, Any], key: str, default: float, defaults_path: Path) -> float:
    raw = data.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidConfig(f"{key} in {defaults_path} must be a number, got {raw!r}") from None
    if value <= 0:
        raise InvalidConfig(f"{key} in {defaults_path} must be positive, got {raw!r}")
    return value
