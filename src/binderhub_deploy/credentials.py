"""Azure login mode selection.

Service-principal login is used when all three ``SP_*`` values are
present. With none of them the user logs in interactively. A partial set
is rejected rather than silently falling back to an interactive login,
which would hang an unattended container run.
"""

from __future__ import annotations

from collections.abc import Mapping

from binderhub_deploy.errors import MissingRequiredConfig
from binderhub_deploy.models import CredentialMode, InteractiveLogin, ServicePrincipalLogin

SP_KEYS: tuple[str, ...] = ("SP_APP_ID", "SP_APP_KEY", "SP_TENANT_ID")


def resolve_login_mode(env: Mapping[str, str]) -> CredentialMode:
    """Choose between interactive and service-principal login.

    Raises:
        MissingRequiredConfig: if only some of the service-principal
            values are set. The first missing key is named.
    """
    values = {key: (env.get(key) or "").strip() for key in SP_KEYS}
    present = [key for key, value in values.items() if value]

    if not present:
        return InteractiveLogin()

    missing = [key for key in SP_KEYS if not values[key]]
    if missing:
        raise MissingRequiredConfig(
            missing[0],
            context=f"when {', '.join(present)} is set for service principal login",
        )

    return ServicePrincipalLogin(
        app_id=values["SP_APP_ID"],
        app_key=values["SP_APP_KEY"],
        tenant_id=values["SP_TENANT_ID"],
    )
