"""Core data models for binderhub-deploy.

Defines the schemas for:
- The JSON configuration file (interactive mode)
- Resolved deployment settings (both modes)
- Derived Azure resource names
- Azure login modes
- External command results
- Deployment stage tracking
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class StageStatus(enum.StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PollState(enum.StrEnum):
    PENDING = "pending"
    READY = "ready"


# --- Config File Schema ---


class AzureSection(BaseModel):
    """The ``azure`` group of ``config.json``."""

    subscription: str = ""
    res_grp_name: str = ""
    location: str = ""
    cluster_name: str = ""
    node_count: int | None = Field(default=None, ge=1)
    vm_size: str = ""


class BinderHubSection(BaseModel):
    """The ``binderhub`` group of ``config.json``."""

    name: str = ""
    version: str = ""


class DockerSection(BaseModel):
    """The ``docker`` group of ``config.json``."""

    id: str = ""
    org: str | None = None
    image_prefix: str = ""


class ConfigDocument(BaseModel):
    """Parsed ``config.json`` document used in interactive mode."""

    model_config = ConfigDict(populate_by_name=True)

    azure: AzureSection = Field(default_factory=AzureSection)
    binderhub: BinderHubSection = Field(default_factory=BinderHubSection)
    docker: DockerSection = Field(default_factory=DockerSection)
    secret_file: str | None = Field(default=None, alias="secretFile")


# --- Deployment Settings ---


class DeploymentSettings(BaseModel):
    """Normalized, validated settings for one deployment run.

    Built once at startup by the config resolver and passed explicitly to
    every component. Required string fields reject empty values.
    """

    model_config = ConfigDict(frozen=True)

    subscription: str = Field(..., min_length=1)
    resource_group: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    cluster_name: str = Field(..., min_length=1)
    node_count: int = Field(..., ge=1)
    vm_size: str = Field(..., min_length=1)
    hub_name: str = Field(..., min_length=1)
    chart_version: str = Field(..., min_length=1)
    docker_id: str = Field(..., min_length=1)
    docker_org: str | None = None
    docker_password: str = Field(..., min_length=1, repr=False)
    image_prefix: str = Field(..., min_length=1)
    contact_email: str | None = None
    secret_file: str | None = None
    use_tiller: bool = False


class DerivedNames(BaseModel):
    """Azure resource names derived from a hub name."""

    model_config = ConfigDict(frozen=True)

    resource_group: str
    cluster_name: str


class HubTarget(BaseModel):
    """The subset of settings needed to find an existing deployment."""

    model_config = ConfigDict(frozen=True)

    subscription: str = Field(..., min_length=1)
    resource_group: str = Field(..., min_length=1)
    cluster_name: str = Field(..., min_length=1)
    hub_name: str = Field(..., min_length=1)


# --- Login Modes ---


class InteractiveLogin(BaseModel):
    """Browser/device-code login as a user."""

    kind: Literal["interactive"] = "interactive"


class ServicePrincipalLogin(BaseModel):
    """Non-interactive login with a service principal."""

    kind: Literal["service_principal"] = "service_principal"
    app_id: str = Field(..., min_length=1)
    app_key: str = Field(..., min_length=1, repr=False)
    tenant_id: str = Field(..., min_length=1)


CredentialMode = Annotated[
    InteractiveLogin | ServicePrincipalLogin,
    Field(discriminator="kind"),
]


# --- Command Results ---


class CommandResult(BaseModel):
    """Outcome of a single external CLI invocation."""

    args: list[str]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_ms: float | None = None
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


# --- Deployment Report ---


class StageRecord(BaseModel):
    """Outcome of one deployment stage."""

    name: str
    status: StageStatus
    detail: str = ""
    finished_at: datetime


class DeploymentReport(BaseModel):
    """Stages completed by a deployment run, in execution order."""

    hub_name: str
    resource_group: str
    cluster_name: str
    stages: list[StageRecord] = Field(default_factory=list)
    hub_ip: str | None = None

    @property
    def completed_stages(self) -> list[str]:
        return [s.name for s in self.stages if s.status == StageStatus.COMPLETED]

    @property
    def failed_stage(self) -> str | None:
        for stage in self.stages:
            if stage.status == StageStatus.FAILED:
                return stage.name
        return None

    def to_dict(self) -> dict[str, object]:
        return self.model_dump(mode="json")
