"""Azure resource name derivation from a hub name."""

from __future__ import annotations

import re

from binderhub_deploy.errors import InvalidConfig
from binderhub_deploy.models import DerivedNames

RESOURCE_GROUP_MAX = 87
RESOURCE_GROUP_SUFFIX = "_RG"
CLUSTER_NAME_MAX = 59
CLUSTER_NAME_SUFFIX = "-AKS"

_RESOURCE_GROUP_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")
_CLUSTER_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9-]")


def derive_resource_group_name(hub_name: str) -> str:
    """Keep ``[A-Za-z0-9_-]``, cut to 87 characters and append ``_RG``."""
    filtered = _RESOURCE_GROUP_DISALLOWED.sub("", hub_name)
    return filtered[:RESOURCE_GROUP_MAX] + RESOURCE_GROUP_SUFFIX


def derive_cluster_name(hub_name: str) -> str:
    """Keep ``[A-Za-z0-9-]``, cut to 59 characters and append ``-AKS``."""
    filtered = _CLUSTER_NAME_DISALLOWED.sub("", hub_name)
    return filtered[:CLUSTER_NAME_MAX] + CLUSTER_NAME_SUFFIX


def derive_names(hub_name: str) -> DerivedNames:
    """Derive both names, rejecting hub names that filter down to nothing."""
    resource_group = derive_resource_group_name(hub_name)
    cluster_name = derive_cluster_name(hub_name)
    if resource_group == RESOURCE_GROUP_SUFFIX or cluster_name == CLUSTER_NAME_SUFFIX:
        raise InvalidConfig(
            f"Hub name {hub_name!r} contains no characters usable in an Azure resource name"
        )
    return DerivedNames(resource_group=resource_group, cluster_name=cluster_name)
