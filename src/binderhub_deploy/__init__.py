"""binderhub-deploy: stand up BinderHub on Azure Kubernetes Service."""

__version__ = "0.4.0"

from binderhub_deploy.config import (
    ContainerConfig,
    InteractiveConfig,
    load_defaults,
    resolve_settings,
    resolve_target,
    select_source,
)
from binderhub_deploy.credentials import resolve_login_mode
from binderhub_deploy.driver import DeploymentDriver, DriverOptions
from binderhub_deploy.errors import (
    ChartInstallError,
    ClusterCreateError,
    ClusterNotReadyError,
    DeployError,
    DeploymentCancelled,
    LoginFailure,
    MissingRequiredConfig,
    ResourceGroupError,
    ServiceIpNotAssignedError,
    TemplateFieldMissing,
)
from binderhub_deploy.models import (
    DeploymentReport,
    DeploymentSettings,
    DerivedNames,
    HubTarget,
    InteractiveLogin,
    ServicePrincipalLogin,
)
from binderhub_deploy.names import derive_cluster_name, derive_names, derive_resource_group_name
from binderhub_deploy.runner.executor import CommandRunner, RecordingRunner
from binderhub_deploy.runner.subprocess_runner import SubprocessRunner

__all__ = [
    "ChartInstallError",
    "ClusterCreateError",
    "ClusterNotReadyError",
    "CommandRunner",
    "ContainerConfig",
    "DeployError",
    "DeploymentCancelled",
    "DeploymentDriver",
    "DeploymentReport",
    "DeploymentSettings",
    "DerivedNames",
    "derive_cluster_name",
    "derive_names",
    "derive_resource_group_name",
    "DriverOptions",
    "HubTarget",
    "InteractiveConfig",
    "InteractiveLogin",
    "load_defaults",
    "LoginFailure",
    "MissingRequiredConfig",
    "RecordingRunner",
    "resolve_login_mode",
    "resolve_settings",
    "resolve_target",
    "ResourceGroupError",
    "select_source",
    "ServiceIpNotAssignedError",
    "ServicePrincipalLogin",
    "SubprocessRunner",
    "TemplateFieldMissing",
    "__version__",
]
