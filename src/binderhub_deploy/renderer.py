"""Helm values rendering.

Fills the chart's ``config.yaml`` and ``secret.yaml`` from templates with
``{{ field }}`` placeholders. Every value is emitted as a YAML
double-quoted scalar, so passwords and tokens never change the document
structure. Placeholders without a value are an error rather than an empty
string the chart would only reject later.

The config document is rendered twice per deployment: once before the hub
has an external address (``hub_url`` is empty) and once after the proxy
service IP is known.
"""

from __future__ import annotations

import json
import re
import secrets
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from binderhub_deploy.errors import InvalidConfig, TemplateFieldMissing
from binderhub_deploy.models import DeploymentSettings

CONFIG_TEMPLATE = "config.yaml.tmpl"
SECRET_TEMPLATE = "secret.yaml.tmpl"
CONFIG_FILENAME = "config.yaml"
SECRET_FILENAME = "secret.yaml"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def load_template(name: str) -> str:
    """Read a template shipped with the package."""
    return resources.files("binderhub_deploy.templates").joinpath(name).read_text(encoding="utf-8")


def render(template: str, context: Mapping[str, Any], *, name: str = "") -> str:
    """Substitute every placeholder in *template* from *context*.

    Deterministic: the same template and context always produce the same
    text.

    Raises:
        TemplateFieldMissing: if a placeholder has no key in *context*.
        InvalidConfig: if the result is not valid YAML.
    """

    def _substitute(match: re.Match[str]) -> str:
        field = match.group(1)
        if field not in context:
            raise TemplateFieldMissing(field, name)
        value = context[field]
        return json.dumps("" if value is None else str(value))

    text = _PLACEHOLDER.sub(_substitute, template)

    try:
        yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidConfig(f"Rendered template {name or '<string>'} is not valid YAML: {exc}") from exc
    return text


def image_prefix(settings: DeploymentSettings) -> str:
    """Registry prefix for built images: ``<org or id>/<prefix>-``."""
    owner = settings.docker_org or settings.docker_id
    return f"{owner}/{settings.image_prefix}-"


def config_context(settings: DeploymentSettings, discovered_ip: str | None = None) -> dict[str, Any]:
    return {
        "image_prefix": image_prefix(settings),
        "hub_url": f"http://{discovered_ip}" if discovered_ip else "",
        "docker_id": settings.docker_id,
        "hub_name": settings.hub_name,
        "contact_email": settings.contact_email or "",
    }


def secret_context(settings: DeploymentSettings, api_token: str, secret_token: str) -> dict[str, Any]:
    return {
        "api_token": api_token,
        "secret_token": secret_token,
        "docker_id": settings.docker_id,
        "docker_password": settings.docker_password,
    }


def render_config(
    settings: DeploymentSettings,
    discovered_ip: str | None = None,
    *,
    template: str | None = None,
) -> str:
    """Render the chart config; pass *discovered_ip* on the final pass."""
    text = template if template is not None else load_template(CONFIG_TEMPLATE)
    return render(text, config_context(settings, discovered_ip), name=CONFIG_TEMPLATE)


def render_secret(
    settings: DeploymentSettings,
    api_token: str,
    secret_token: str,
    *,
    template: str | None = None,
) -> str:
    text = template if template is not None else load_template(SECRET_TEMPLATE)
    return render(text, secret_context(settings, api_token, secret_token), name=SECRET_TEMPLATE)


def generate_token() -> str:
    """Generate a 256-bit hex token (64 hex characters)."""
    return secrets.token_hex(32)


def write_values(workdir: str | Path, filename: str, text: str) -> Path:
    """Write a rendered document into *workdir*, replacing any old copy."""
    directory = Path(workdir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(text, encoding="utf-8")
    if filename == SECRET_FILENAME:
        path.chmod(0o600)
    return path
