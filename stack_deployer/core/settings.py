"""Deployment settings.

Provides centralized configuration using Pydantic BaseSettings with
environment variable support for operational tuning.
"""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import (
    BOOTSTRAP_COMMAND,
    DEFAULT_BOOTSTRAP_QUALIFIER,
    DEFAULT_TOOLKIT_STACK_NAME,
    LARGE_TEMPLATE_SIZE_KB,
)


class DeploySettings(BaseSettings):
    """Stack deployment configuration."""

    bootstrap_qualifier: str = Field(
        DEFAULT_BOOTSTRAP_QUALIFIER,
        alias="DEPLOY_BOOTSTRAP_QUALIFIER",
        description="Qualifier of the staging resources when the stack does not name one",
    )

    toolkit_stack_name: str = Field(
        DEFAULT_TOOLKIT_STACK_NAME,
        alias="DEPLOY_TOOLKIT_STACK_NAME",
        description="Name of the bootstrap stack",
    )

    bootstrap_command: str = Field(
        BOOTSTRAP_COMMAND,
        alias="DEPLOY_BOOTSTRAP_COMMAND",
        description="Command suggested to the user when the environment is not bootstrapped",
    )

    change_set_poll_interval: float = Field(
        5.0,
        alias="DEPLOY_CHANGESET_POLL_INTERVAL",
        description="Seconds between change set status checks",
    )

    stack_poll_interval: float = Field(
        5.0, alias="DEPLOY_STACK_POLL_INTERVAL", description="Seconds between stack status checks"
    )

    activity_poll_interval: float = Field(
        2.0,
        alias="DEPLOY_ACTIVITY_POLL_INTERVAL",
        description="Seconds between stack event polls while monitoring",
    )

    large_template_size_kb: int = Field(
        LARGE_TEMPLATE_SIZE_KB,
        alias="DEPLOY_LARGE_TEMPLATE_SIZE_KB",
        description="Templates above this size are uploaded instead of inlined",
    )

    log_dir: Path | None = Field(
        None,
        alias="DEPLOY_LOG_DIR",
        description="Directory for deploy.log and assets.log; unset keeps logging unconfigured",
    )

    log_level: str | None = Field(None, alias="DEPLOY_LOG_LEVEL", description="Log level")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


def load_settings(env_file: Path | str = ".env") -> DeploySettings:
    """Apply ``env_file`` to the environment and refresh ``deploy_settings`` from it.

    The shared instance is updated in place so modules holding a reference
    to it see the new values.
    """
    load_dotenv(env_file)
    fresh = DeploySettings(_env_file=env_file)
    for name in DeploySettings.model_fields:
        setattr(deploy_settings, name, getattr(fresh, name))
    return deploy_settings


# Global settings instance
deploy_settings = DeploySettings()
