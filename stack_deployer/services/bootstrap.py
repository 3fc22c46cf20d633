"""
Bootstrap Compatibility

Resolves the staging resources of an environment, checks that they are
recent enough for a stack, and deploys the bootstrap stack itself.
"""

import json
import re
import tempfile
from pathlib import Path
from typing import Any

from ..constants import BOOTSTRAP_VERSION_OUTPUT, BOOTSTRAP_VERSION_RESOURCE
from ..core.aws import Sdk, SdkProvider
from ..core.exceptions import DowngradeRejected, MissingBootstrap, StaleBootstrap
from ..core.logging_config import get_deploy_logger
from ..core.settings import deploy_settings
from ..core.stack_activity import MonitorFactory, default_monitor_factory
from ..core.toolkit_info import ToolkitInfoCache, ToolkitResourcesInfo, ToolkitStackInfo
from ..models.artifacts import Environment, StackArtifact
from ..models.deployment import DeploymentResult, DeployStackOptions, Tag
from .deploy_stack import deploy_stack

LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)")


class BootstrapCompatibilityGuard:
    """Looks up staging resources and enforces minimum bootstrap versions."""

    def __init__(self, cache: ToolkitInfoCache | None = None):
        self.cache = cache or ToolkitInfoCache()
        self.logger = get_deploy_logger().bind(component="bootstrap_guard")

    async def resolve(
        self, environment: Environment, sdk: Sdk, qualifier: str | None = None
    ) -> ToolkitResourcesInfo | None:
        """Staging resources of ``environment``, or ``None`` when not bootstrapped."""
        info = await self.cache.lookup(environment, sdk, qualifier)
        if info is None:
            self.logger.debug(
                "No staging resources found", environment=environment.name, qualifier=qualifier
            )
        return info

    def validate(
        self,
        stack_name: str,
        required_version: int | None,
        info: ToolkitResourcesInfo | None,
    ) -> None:
        """Check a minimum bootstrap version requirement.

        Raises:
            MissingBootstrap: a version is required but nothing is bootstrapped
            StaleBootstrap: the bootstrapped version is too old
        """
        if required_version is None:
            return

        remediation = deploy_settings.bootstrap_command
        if info is None:
            raise MissingBootstrap(
                f"{stack_name}: publishing assets requires bootstrap stack version "
                f"'{required_version}', no bootstrap stack found. Please run '{remediation}'.",
                stack_name=stack_name,
                remediation=remediation,
            )

        if info.version < required_version:
            raise StaleBootstrap(
                f"{stack_name}: publishing assets requires bootstrap stack version "
                f"'{required_version}', found '{info.version}'. Please run '{remediation}' "
                "with a newer CLI version.",
                stack_name=stack_name,
                remediation=remediation,
            )

        self.logger.debug(
            "Bootstrap version is sufficient",
            stack_name=stack_name,
            required=required_version,
            found=info.version,
        )


def bootstrap_version_from_template(template: dict[str, Any]) -> int:
    """Read the bootstrap version a bootstrap template would install.

    The ``BootstrapVersion`` output wins over the ``CdkBootstrapVersion``
    resource. Returns 0 when neither holds an integer.

    Example:
        >>> bootstrap_version_from_template({"Outputs": {"BootstrapVersion": {"Value": "7"}}})
        7
    """
    sources = [
        ((template.get("Outputs") or {}).get(BOOTSTRAP_VERSION_OUTPUT) or {}).get("Value"),
        (
            ((template.get("Resources") or {}).get(BOOTSTRAP_VERSION_RESOURCE) or {}).get(
                "Properties"
            )
            or {}
        ).get("Value"),
    ]
    for source in sources:
        if isinstance(source, bool):
            continue
        if isinstance(source, int):
            return source
        if isinstance(source, float):
            return int(source)
        if isinstance(source, str):
            match = LEADING_INTEGER.match(source)
            if match:
                return int(match.group(1))
    return 0


class BootstrapStack:
    """The bootstrap stack of one environment, as found and as it will be deployed."""

    def __init__(
        self,
        sdk_provider: SdkProvider,
        sdk: Sdk,
        resolved_environment: Environment,
        toolkit_stack_name: str,
        current_toolkit_info: ToolkitStackInfo | None,
    ):
        self.sdk_provider = sdk_provider
        self.sdk = sdk
        self.resolved_environment = resolved_environment
        self.toolkit_stack_name = toolkit_stack_name
        self.current_toolkit_info = current_toolkit_info
        self.logger = get_deploy_logger().bind(
            component="bootstrap_stack", stack_name=toolkit_stack_name
        )

    @classmethod
    async def lookup(
        cls,
        sdk_provider: SdkProvider,
        environment: Environment,
        toolkit_stack_name: str | None = None,
    ) -> "BootstrapStack":
        toolkit_stack_name = toolkit_stack_name or deploy_settings.toolkit_stack_name
        resolved = await sdk_provider.resolve_environment(environment)
        sdk = await sdk_provider.for_environment(resolved)
        current = await ToolkitStackInfo.lookup(resolved, sdk, toolkit_stack_name)
        return cls(sdk_provider, sdk, resolved, toolkit_stack_name, current)

    @property
    def parameters(self) -> dict[str, str]:
        return self.current_toolkit_info.parameters if self.current_toolkit_info else {}

    @property
    def termination_protection(self) -> bool | None:
        if self.current_toolkit_info is None:
            return None
        return self.current_toolkit_info.stack.termination_protection

    @property
    def version(self) -> int:
        return self.current_toolkit_info.version if self.current_toolkit_info else 0

    async def partition(self) -> str:
        return (await self.sdk.current_account()).partition

    async def update(
        self,
        template: dict[str, Any],
        parameters: dict[str, str | None],
        *,
        force: bool = False,
        role_arn: str | None = None,
        tags: list[Tag] | None = None,
        execute: bool | None = None,
        termination_protection: bool | None = None,
        monitor_factory: MonitorFactory = default_monitor_factory,
        toolkit_cache: ToolkitInfoCache | None = None,
    ) -> DeploymentResult:
        """Deploy ``template`` as the bootstrap stack.

        Parameters not given keep their deployed values.
        Cached staging lookups for the environment are dropped from
        ``toolkit_cache`` once the stack is deployed.

        Raises:
            DowngradeRejected: the template is older than what is deployed and
                ``force`` is not set
        """
        new_version = bootstrap_version_from_template(template)
        if self.current_toolkit_info and new_version < self.version and not force:
            raise DowngradeRejected(
                f"Not downgrading existing bootstrap stack from version '{self.version}' "
                f"to version '{new_version}'. Use --force to force.",
                stack_name=self.toolkit_stack_name,
            )

        template_file = f"{self.toolkit_stack_name}.template.json"
        self.logger.info(
            "Deploying bootstrap stack",
            environment=self.resolved_environment.name,
            current_version=self.version,
            new_version=new_version,
        )
        # The template file is only read if the template is too large to inline
        with tempfile.TemporaryDirectory(prefix="cdk-bootstrap") as directory:
            assembly_directory = Path(directory)
            with open(assembly_directory / template_file, "w", encoding="utf-8") as f:
                json.dump(template, f, indent=2)

            stack = StackArtifact(
                id=self.toolkit_stack_name,
                stack_name=self.toolkit_stack_name,
                template=template,
                template_file=template_file,
                assembly_directory=assembly_directory,
                environment=self.resolved_environment,
                termination_protection=bool(termination_protection),
            )
            result = await deploy_stack(
                DeployStackOptions(
                    stack=stack,
                    resolved_environment=self.resolved_environment,
                    parameters=parameters,
                    tags=tags,
                    force=force,
                    execute=execute,
                    role_arn=role_arn,
                    use_previous_parameters=True,
                ),
                self.sdk,
                self.sdk_provider,
                None,
                monitor_factory,
            )

        if toolkit_cache is not None:
            qualifier = parameters.get("Qualifier") or self.parameters.get("Qualifier")
            toolkit_cache.invalidate(self.resolved_environment, qualifier)
        return result
