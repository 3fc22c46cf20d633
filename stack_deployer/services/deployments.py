"""
CloudFormation Deployments

Finds the right SDK, execution role and staging resources for a stack, then
hands off to the change set engine.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..constants import PARTITION_PLACEHOLDER
from ..core.asset_manifest import AssetManifest
from ..core.asset_publishing import publish_assets
from ..core.aws import Sdk, SdkProvider
from ..core.cloudformation import lookup_stack
from ..core.logging_config import get_deploy_logger
from ..core.stack_activity import MonitorFactory, default_monitor_factory
from ..core.toolkit_info import ToolkitInfoCache, ToolkitResourcesInfo
from ..models.artifacts import Environment, StackArtifact
from ..models.deployment import DeploymentResult, DeployStackOptions, DestroyStackOptions, Tag
from ..utils import replace_env_placeholders
from .bootstrap import BootstrapCompatibilityGuard
from .deploy_stack import deploy_stack, destroy_stack


@dataclass
class PreparedSdk:
    """What is needed to act on a stack in its environment."""

    stack_sdk: Sdk
    resolved_environment: Environment
    cloudformation_role_arn: str | None


class CloudFormationDeployments:
    """Deploys stack artifacts to the environments they target."""

    def __init__(
        self,
        sdk_provider: SdkProvider,
        toolkit_cache: ToolkitInfoCache | None = None,
        monitor_factory: MonitorFactory = default_monitor_factory,
    ):
        self.sdk_provider = sdk_provider
        self.toolkit_cache = toolkit_cache or ToolkitInfoCache()
        self.bootstrap_guard = BootstrapCompatibilityGuard(self.toolkit_cache)
        self.monitor_factory = monitor_factory
        self.logger = get_deploy_logger().bind(service="CloudFormationDeployments")

    async def read_current_template(self, stack: StackArtifact) -> dict[str, Any]:
        self.logger.debug("Reading existing template", stack_name=stack.display_name)
        prepared = await self.prepare_sdk_for(stack)
        snapshot = await lookup_stack(prepared.stack_sdk.cloudformation(), stack.stack_name)
        return snapshot.template

    async def deploy_stack(
        self,
        stack: StackArtifact,
        *,
        deploy_name: str | None = None,
        parameters: dict[str, str | None] | None = None,
        tags: list[Tag] | None = None,
        force: bool = False,
        execute: bool | None = None,
        reuse_assets: list[str] | None = None,
        use_previous_parameters: bool = False,
        role_arn: str | None = None,
        qualifier: str | None = None,
        notification_arns: list[str] | None = None,
        quiet: bool = False,
    ) -> DeploymentResult:
        """Publish the stack's assets and deploy it.

        Bootstrap version requirements are checked for every asset manifest
        before that manifest is published, then for the stack itself.
        """
        prepared = await self.prepare_sdk_for(stack, role_arn)
        options = DeployStackOptions(
            stack=stack,
            resolved_environment=prepared.resolved_environment,
            deploy_name=deploy_name,
            parameters=parameters or {},
            tags=tags,
            force=force,
            execute=execute,
            reuse_assets=reuse_assets,
            use_previous_parameters=use_previous_parameters,
            role_arn=prepared.cloudformation_role_arn,
            qualifier=qualifier,
            notification_arns=notification_arns,
            quiet=quiet,
        )

        toolkit_info = await self.bootstrap_guard.resolve(
            prepared.resolved_environment, prepared.stack_sdk, options.qualifier
        )

        await self.publish_stack_assets(stack, prepared.resolved_environment, toolkit_info)

        self.bootstrap_guard.validate(
            stack.stack_name, stack.requires_bootstrap_stack_version, toolkit_info
        )

        return await deploy_stack(
            options, prepared.stack_sdk, self.sdk_provider, toolkit_info, self.monitor_factory
        )

    async def destroy_stack(
        self,
        stack: StackArtifact,
        *,
        deploy_name: str | None = None,
        role_arn: str | None = None,
        quiet: bool = False,
    ) -> None:
        prepared = await self.prepare_sdk_for(stack, role_arn)
        await destroy_stack(
            DestroyStackOptions(
                stack=stack,
                deploy_name=deploy_name,
                role_arn=prepared.cloudformation_role_arn,
                quiet=quiet,
            ),
            prepared.stack_sdk,
            self.monitor_factory,
        )

    async def stack_exists(self, stack: StackArtifact, deploy_name: str | None = None) -> bool:
        prepared = await self.prepare_sdk_for(stack)
        snapshot = await lookup_stack(
            prepared.stack_sdk.cloudformation(),
            deploy_name or stack.stack_name,
            fetch_template=False,
        )
        return snapshot.exists

    async def prepare_sdk_for(
        self, stack: StackArtifact, role_arn: str | None = None
    ) -> PreparedSdk:
        """Resolve the stack's environment and the credentials to act on it with.

        ``role_arn`` overrides the stack's own CloudFormation execution role.
        """
        resolved = await self.sdk_provider.resolve_environment(stack.environment)

        partition: str | None = None
        assume_role_arn = stack.assume_role_arn
        cloudformation_role_arn = role_arn or stack.cloudformation_execution_role_arn
        role_arns = (assume_role_arn, cloudformation_role_arn)
        if any(arn and PARTITION_PLACEHOLDER in arn for arn in role_arns):
            # Roles live in the base credentials' partition
            partition = await self.sdk_provider.base_credentials_partition(resolved) or "aws"

        replacements = {
            "account": resolved.account,
            "region": resolved.region,
            "partition": partition,
        }
        assume_role_arn = replace_env_placeholders(assume_role_arn, **replacements)
        cloudformation_role_arn = replace_env_placeholders(cloudformation_role_arn, **replacements)

        stack_sdk = await self.sdk_provider.for_environment(resolved, assume_role_arn)
        return PreparedSdk(
            stack_sdk=stack_sdk,
            resolved_environment=resolved,
            cloudformation_role_arn=cloudformation_role_arn,
        )

    async def publish_stack_assets(
        self,
        stack: StackArtifact,
        environment: Environment,
        toolkit_info: ToolkitResourcesInfo | None,
    ) -> None:
        """Publish every asset manifest the stack depends on."""
        for artifact in stack.asset_manifests:
            self.bootstrap_guard.validate(
                stack.stack_name, artifact.requires_bootstrap_stack_version, toolkit_info
            )
            manifest_path = Path(artifact.file)
            if not manifest_path.is_absolute():
                manifest_path = stack.assembly_directory / manifest_path
            self.logger.info(
                "Publishing asset manifest",
                stack_name=stack.stack_name,
                manifest=artifact.id,
            )
            manifest = AssetManifest.from_file(manifest_path)
            await publish_assets(manifest, self.sdk_provider, environment)
