"""
Stack Toolkit

Deploys and destroys a list of stacks, one at a time, in order.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import ALL_STACKS
from ..core.aws import SdkProvider
from ..core.logging_config import get_deploy_logger, setup_logging
from ..core.settings import load_settings
from ..models.artifacts import StackArtifact
from ..models.deployment import Tag
from .deployments import CloudFormationDeployments


@dataclass
class StackParameterMap:
    """Parameter overrides per stack name, plus overrides for every stack."""

    stacks: dict[str, dict[str, str | None]] = field(default_factory=dict)

    @classmethod
    def from_overrides(cls, overrides: dict[str, str | None]) -> "StackParameterMap":
        """Parse ``{"Stack:Param": value, "Param": value}`` style overrides.

        Keys without a stack prefix apply to all stacks.
        """
        parameter_map = cls({ALL_STACKS: {}})
        for key, value in overrides.items():
            stack_name, sep, parameter = key.partition(":")
            if not sep or not parameter:
                parameter_map.stacks[ALL_STACKS][stack_name] = value
            else:
                parameter_map.stacks.setdefault(stack_name, {})[parameter] = value
        return parameter_map

    def for_stack(self, stack_name: str) -> dict[str, str | None]:
        """Overrides for one stack; stack-specific values win over wildcard ones."""
        return {**self.stacks.get(ALL_STACKS, {}), **self.stacks.get(stack_name, {})}


@dataclass
class ToolkitDeployOptions:
    """Options for deploying a list of stacks."""

    parameters: StackParameterMap = field(default_factory=StackParameterMap)
    tags: list[Tag] | None = None
    role_arn: str | None = None
    qualifier: str | None = None
    reuse_assets: list[str] | None = None
    notification_arns: list[str] | None = None
    execute: bool | None = None
    force: bool = False
    use_previous_parameters: bool = False
    outputs_file: Path | None = None
    quiet: bool = False


def tags_for_stack(stack: StackArtifact) -> list[Tag]:
    return [Tag(key=key, value=value) for key, value in stack.tags.items()]


class StackToolkit:
    """Drives deployments of several stacks through ``CloudFormationDeployments``."""

    def __init__(self, cloudformation: CloudFormationDeployments):
        self.cloudformation = cloudformation
        self.logger = get_deploy_logger().bind(service="StackToolkit")

    @classmethod
    def from_environment(
        cls, profile_name: str | None = None, env_file: Path | str = ".env"
    ) -> "StackToolkit":
        """Build a toolkit configured from ``env_file`` and the process environment.

        Log files are written when ``DEPLOY_LOG_DIR`` is set.
        """
        settings = load_settings(env_file)
        if settings.log_dir is not None:
            setup_logging(settings.log_dir, settings.log_level)
        return cls(CloudFormationDeployments(SdkProvider(profile_name=profile_name)))

    async def deploy(
        self, stacks: list[StackArtifact], options: ToolkitDeployOptions | None = None
    ) -> dict[str, dict[str, str]]:
        """Deploy ``stacks`` in order and return their outputs by stack name.

        Outputs collected so far are written to ``options.outputs_file`` even
        when a later stack fails.
        """
        options = options or ToolkitDeployOptions()
        stack_outputs: dict[str, dict[str, str]] = {}

        for stack in stacks:
            if stack.resource_count == 0:
                await self._handle_empty_stack(stack, options)
                continue

            self.logger.info("Deploying stack", stack_name=stack.display_name)
            tags = options.tags or tags_for_stack(stack)
            try:
                result = await self.cloudformation.deploy_stack(
                    stack,
                    deploy_name=stack.stack_name,
                    parameters=options.parameters.for_stack(stack.stack_name),
                    tags=tags,
                    force=options.force,
                    execute=options.execute,
                    reuse_assets=options.reuse_assets,
                    use_previous_parameters=options.use_previous_parameters,
                    role_arn=options.role_arn,
                    qualifier=options.qualifier,
                    notification_arns=options.notification_arns,
                    quiet=options.quiet,
                )
                if result.outputs:
                    stack_outputs[stack.stack_name] = result.outputs
                self.logger.info(
                    "Stack deployed",
                    stack_name=stack.display_name,
                    no_changes=result.no_op,
                    stack_arn=result.stack_arn,
                    outputs=dict(sorted(result.outputs.items())),
                )
            except Exception as e:
                self.logger.error(
                    "Stack deployment failed", stack_name=stack.display_name, error=str(e)
                )
                raise
            finally:
                if options.outputs_file is not None:
                    self._write_outputs(options.outputs_file, stack_outputs)

        return stack_outputs

    async def _handle_empty_stack(
        self, stack: StackArtifact, options: ToolkitDeployOptions
    ) -> None:
        if not await self.cloudformation.stack_exists(stack):
            self.logger.warning(
                f"{stack.display_name}: stack has no resources, skipping deployment.",
                stack_name=stack.stack_name,
            )
            return

        self.logger.warning(
            f"{stack.display_name}: stack has no resources, deleting existing stack.",
            stack_name=stack.stack_name,
        )
        await self.destroy([stack], role_arn=options.role_arn, action="deploy")

    async def destroy(
        self, stacks: list[StackArtifact], role_arn: str | None = None, action: str = "destroy"
    ) -> None:
        """Destroy ``stacks`` in reverse deployment order."""
        for stack in reversed(stacks):
            self.logger.info("Destroying stack", stack_name=stack.display_name)
            try:
                await self.cloudformation.destroy_stack(
                    stack, deploy_name=stack.stack_name, role_arn=role_arn
                )
            except Exception as e:
                self.logger.error(
                    f"{stack.display_name}: {action} failed",
                    stack_name=stack.display_name,
                    error=str(e),
                )
                raise
            self.logger.info(f"{stack.display_name}: {action}ed", stack_name=stack.display_name)

    @staticmethod
    def _write_outputs(outputs_file: Path, stack_outputs: dict[str, dict[str, str]]) -> None:
        outputs_file = Path(outputs_file)
        outputs_file.parent.mkdir(parents=True, exist_ok=True)
        with open(outputs_file, "w", encoding="utf-8") as f:
            json.dump(stack_outputs, f, indent=2)
