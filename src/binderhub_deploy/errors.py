"""Exception hierarchy for binderhub-deploy.

Every error is fatal to the current run. Each class carries the process
exit code the CLI uses when the error escapes a command.
"""

from __future__ import annotations


class DeployError(Exception):
    """Base class for all deployment errors."""

    exit_code = 1

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


# --- Configuration ---


class ConfigError(DeployError):
    """Raised when configuration cannot be resolved."""

    exit_code = 2


class MissingRequiredConfig(ConfigError):
    """A required configuration key is missing or empty."""

    def __init__(self, key: str, *, context: str = "") -> None:
        suffix = f" {context}" if context else ""
        super().__init__(f"{key} must be set{suffix}")
        self.key = key


class InvalidConfig(ConfigError):
    """A configuration value is present but unusable."""


class TemplateFieldMissing(ConfigError):
    """A template placeholder has no resolved value."""

    def __init__(self, field: str, template: str = "") -> None:
        where = f" in template {template}" if template else ""
        super().__init__(f"No value for placeholder '{field}'{where}")
        self.field = field


class CommandValidationError(ConfigError):
    """A value interpolated into an external command failed validation."""


# --- Cloud and cluster ---


class LoginFailure(DeployError):
    """Azure login or subscription selection failed."""

    exit_code = 3


class ResourceGroupError(DeployError):
    """The resource group could not be checked or created."""

    exit_code = 4


class ClusterCreateError(DeployError):
    """The AKS cluster could not be created or its credentials fetched."""

    exit_code = 4


class ChartInstallError(DeployError):
    """A helm or tiller step failed."""

    exit_code = 6


# --- Polling ---


class PollTimeout(DeployError):
    """A readiness poll did not reach its ready state in time."""

    exit_code = 5

    def __init__(self, message: str, *, attempts: int = 0, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.attempts = attempts


class ClusterNotReadyError(PollTimeout):
    """Cluster nodes did not all report Ready before the deadline."""


class TillerNotReadyError(PollTimeout):
    """The tiller pod did not reach Running before the deadline."""


class ServiceIpNotAssignedError(PollTimeout):
    """The hub proxy service got no external address before the deadline."""


class DeploymentCancelled(DeployError):
    """The operator cancelled the run."""

    exit_code = 130
