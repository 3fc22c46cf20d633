"""Core infrastructure for stack deployments."""

from .exceptions import (  # noqa: F401
    InternalConsistencyError,
    StackDeployError,
    UserActionableError,
)
from .settings import DeploySettings, deploy_settings, load_settings  # noqa: F401

__all__ = [
    "StackDeployError",
    "UserActionableError",
    "InternalConsistencyError",
    "DeploySettings",
    "deploy_settings",
    "load_settings",
]
