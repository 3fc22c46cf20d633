"""
Change Set Engine

Deploys a single stack through a CloudFormation change set, and tears stacks
down again. One call handles one stack; callers sequence multiple stacks.
"""

import re
import uuid
from typing import Any

import yaml

from ..constants import (
    CHANGE_SET_CAPABILITIES,
    CHANGE_SET_PREFIX,
    PARTITION_PLACEHOLDER,
    TEMPLATE_OBJECT_PREFIX,
)
from ..core.asset_manifest import AssetManifestBuilder
from ..core.asset_publishing import publish_assets
from ..core.aws import Sdk, SdkProvider, aws_call, drop_none
from ..core.cloudformation import (
    TemplateParameters,
    lookup_stack,
    wait_for_change_set,
    wait_for_stack_delete,
    wait_for_stack_deploy,
)
from ..core.exceptions import (
    ConfigurationError,
    StackDestroyFailed,
    StackDisappeared,
    TemplateTooLarge,
    UnrecoverableFailedStack,
)
from ..core.logging_config import get_deploy_logger
from ..core.settings import deploy_settings
from ..core.stack_activity import MonitorFactory, default_monitor_factory
from ..core.toolkit_info import ToolkitResourcesInfo
from ..models.artifacts import Environment, StackArtifact
from ..models.deployment import (
    DeploymentResult,
    DeployStackOptions,
    DestroyStackOptions,
    StackSnapshot,
)
from ..utils import content_hash, format_size, replace_env_placeholders, s3_url_suffix
from .assets import add_metadata_assets_to_manifest
from .skip_decision import can_skip_deploy

logger = get_deploy_logger()

S3_URL_PATTERN = re.compile(r"s3://([^/]+)/(.*)$")


def to_yaml(template: dict[str, Any]) -> str:
    return yaml.safe_dump(template, sort_keys=False, default_flow_style=False)


async def deploy_stack(
    options: DeployStackOptions,
    sdk: Sdk,
    sdk_provider: SdkProvider,
    toolkit_info: ToolkitResourcesInfo | None,
    monitor_factory: MonitorFactory = default_monitor_factory,
) -> DeploymentResult:
    """Deploy a stack through a change set.

    Args:
        options: Resolved deployment options
        sdk: SDK for the stack's environment (possibly with an assumed role)
        sdk_provider: Provider used to publish assets
        toolkit_info: Staging resources of the environment, if bootstrapped
        monitor_factory: Creates the progress monitor for the execution

    Returns:
        The deployment result. ``no_op`` is set when nothing was deployed.
    """
    stack = options.stack
    deploy_name = options.deploy_name
    cfn = sdk.cloudformation()
    log = logger.bind(stack_name=deploy_name)

    snapshot = await lookup_stack(cfn, deploy_name)

    if snapshot.status.is_creation_failure:
        snapshot = await _delete_failed_stack(cfn, deploy_name, snapshot)

    # Assets in template metadata are published through an ad-hoc manifest
    # and located by template parameters
    legacy_assets = AssetManifestBuilder()
    asset_params = await add_metadata_assets_to_manifest(
        stack, legacy_assets, toolkit_info, options.reuse_assets
    )

    # Asset locations override caller values of the same name
    final_parameter_values: dict[str, str | None] = {**options.parameters, **asset_params}
    template_params = TemplateParameters.from_template(stack.template)
    if options.use_previous_parameters:
        stack_params = template_params.update_existing(final_parameter_values, snapshot.parameters)
    else:
        stack_params = template_params.supply_all(final_parameter_values)

    if can_skip_deploy(options, snapshot, stack_params.has_changes(snapshot.parameters)):
        log.info("Skipping deployment (use --force to override)")
        return DeploymentResult(
            no_op=True, outputs=snapshot.outputs, stack_arn=snapshot.stack_id, stack_artifact=stack
        )
    log.debug("Deploying")

    execution_id = str(uuid.uuid4())
    body_parameter = make_body_parameter(
        stack, options.resolved_environment, legacy_assets, toolkit_info
    )

    if not legacy_assets.is_empty:
        await publish_assets(
            legacy_assets.to_manifest(stack.assembly_directory),
            sdk_provider,
            options.resolved_environment,
        )

    change_set_name = f"{CHANGE_SET_PREFIX}{execution_id}"
    change_set_type = (
        "UPDATE" if snapshot.exists and not snapshot.status.is_review_in_progress else "CREATE"
    )
    log.info("Creating CloudFormation changeset", change_set=change_set_name, type=change_set_type)
    change_set = await aws_call(
        cfn.create_change_set,
        **drop_none(
            {
                "StackName": deploy_name,
                "ChangeSetName": change_set_name,
                "ChangeSetType": change_set_type,
                "Description": f"CDK Changeset for execution {execution_id}",
                **body_parameter,
                "Parameters": stack_params.api_parameters,
                "RoleARN": options.role_arn,
                "NotificationARNs": options.notification_arns,
                "Capabilities": CHANGE_SET_CAPABILITIES,
                "Tags": [tag.to_api() for tag in options.tags or []],
            }
        ),
    )
    stack_arn = change_set.get("StackId")
    log.debug("Initiated creation of changeset", change_set_id=change_set.get("Id"))

    description = await wait_for_change_set(cfn, deploy_name, change_set_name, change_set_type)

    await _reconcile_termination_protection(
        cfn, deploy_name, snapshot, bool(options.termination_protection)
    )

    if description.has_no_changes:
        log.info("No changes are to be performed")
        await aws_call(cfn.delete_change_set, StackName=deploy_name, ChangeSetName=change_set_name)
        return DeploymentResult(
            no_op=True, outputs=snapshot.outputs, stack_arn=stack_arn, stack_artifact=stack
        )

    if not options.execute:
        log.info(
            "Changeset created and waiting in review for manual execution (--no-execute)",
            change_set=change_set_name,
        )
        return DeploymentResult(
            no_op=False, outputs=snapshot.outputs, stack_arn=stack_arn, stack_artifact=stack
        )

    log.debug("Initiating execution of changeset", change_set=change_set_name)
    await aws_call(cfn.execute_change_set, StackName=deploy_name, ChangeSetName=change_set_name)

    monitor = None
    if not options.quiet:
        monitor = monitor_factory(
            cfn, deploy_name, description.change_count, description.creation_time
        )
        monitor.start()
    try:
        final_stack = await wait_for_stack_deploy(cfn, deploy_name)
        if final_stack is None:
            raise StackDisappeared(
                f"Stack deploy failed (the stack {deploy_name} disappeared while we were "
                "deploying it)",
                stack_name=deploy_name,
            )
    finally:
        if monitor is not None:
            await monitor.stop()

    log.info("Stack has completed updating", status=str(final_stack.status))
    return DeploymentResult(
        no_op=False, outputs=final_stack.outputs, stack_arn=stack_arn, stack_artifact=stack
    )


async def _delete_failed_stack(
    cfn: Any, deploy_name: str, snapshot: StackSnapshot
) -> StackSnapshot:
    """Delete a stack that failed to create so it can be created again."""
    logger.info(
        "Found existing stack that had previously failed creation, deleting it before "
        "attempting to re-create it",
        stack_name=deploy_name,
        status=str(snapshot.status),
    )
    await aws_call(cfn.delete_stack, StackName=deploy_name)
    deleted = await wait_for_stack_delete(cfn, deploy_name)
    if deleted.exists and not deleted.status.is_deleted:
        raise UnrecoverableFailedStack(
            f"Failed deleting stack {deploy_name} that had previously failed creation "
            f"(current state: {deleted.status})",
            stack_name=deploy_name,
        )
    # No need to look the stack up again right after deleting it
    return StackSnapshot.does_not_exist(deploy_name)


async def _reconcile_termination_protection(
    cfn: Any, deploy_name: str, snapshot: StackSnapshot, desired: bool
) -> None:
    if snapshot.termination_protection == desired:
        return
    logger.debug(
        "Updating termination protection",
        stack_name=deploy_name,
        current=snapshot.termination_protection,
        desired=desired,
    )
    await aws_call(
        cfn.update_termination_protection,
        StackName=deploy_name,
        EnableTerminationProtection=desired,
    )
    logger.debug("Termination protection updated", stack_name=deploy_name, enabled=desired)


def make_body_parameter(
    stack: StackArtifact,
    environment: Environment,
    asset_manifest: AssetManifestBuilder,
    toolkit_info: ToolkitResourcesInfo | None,
) -> dict[str, str]:
    """Build the TemplateBody or TemplateURL argument of CreateChangeSet.

    Small templates are sent inline. Larger ones are added to
    ``asset_manifest`` for upload to the staging bucket, which must exist.
    """
    if stack.stack_template_asset_object_url:
        url = rest_url_from_manifest(stack.stack_template_asset_object_url, environment)
        return {"TemplateURL": url}

    template_body = to_yaml(stack.template)
    size = len(template_body.encode("utf-8"))
    limit_kb = deploy_settings.large_template_size_kb
    if size <= limit_kb * 1024:
        return {"TemplateBody": template_body}

    if toolkit_info is None:
        remediation = f"{deploy_settings.bootstrap_command} {environment.name}"
        logger.error(
            f"The template for stack \"{stack.display_name}\" is {round(size / 1024)}KiB. "
            f"Templates larger than {limit_kb}KiB must be uploaded to S3.",
            stack_name=stack.stack_name,
            remediation=remediation,
        )
        raise TemplateTooLarge(
            f'{stack.display_name}: Template too large to deploy ("{remediation}" is required)',
            stack_name=stack.stack_name,
            remediation=remediation,
        )

    template_hash = content_hash(template_body)
    key = f"{TEMPLATE_OBJECT_PREFIX}/{stack.id}/{template_hash}.yml"
    asset_manifest.add_file_asset(
        template_hash,
        {"path": stack.template_file},
        {"bucket_name": toolkit_info.bucket_name, "object_key": key},
    )
    template_url = f"{toolkit_info.bucket_url}/{key}"
    logger.debug(
        "Storing template in S3", template_url=template_url, size=format_size(size)
    )
    return {"TemplateURL": template_url}


def rest_url_from_manifest(url: str, environment: Environment) -> str:
    """Turn an ``s3://bucket/key`` URL into the HTTPS URL CloudFormation expects.

    Account and region placeholders are substituted first. Other URLs are
    returned unchanged.
    """
    url = replace_env_placeholders(url, account=environment.account, region=environment.region)
    if PARTITION_PLACEHOLDER in url:
        raise ConfigurationError(
            "Cannot use '${AWS::Partition}' in the 'stackTemplateAssetObjectUrl' field"
        )

    match = S3_URL_PATTERN.match(url)
    if not match:
        return url

    bucket_name, object_key = match.groups()
    suffix = s3_url_suffix(environment.region)
    return f"https://s3.{environment.region}.{suffix}/{bucket_name}/{object_key}"


async def destroy_stack(
    options: DestroyStackOptions,
    sdk: Sdk,
    monitor_factory: MonitorFactory = default_monitor_factory,
) -> None:
    """Delete a stack and wait until it is gone. Missing stacks are ignored."""
    deploy_name = options.deploy_name
    cfn = sdk.cloudformation()

    current = await lookup_stack(cfn, deploy_name, fetch_template=False)
    if not current.exists:
        logger.debug("Stack does not exist, nothing to destroy", stack_name=deploy_name)
        return

    monitor = None
    if not options.quiet:
        monitor = monitor_factory(cfn, deploy_name, options.stack.resource_count, None)
        monitor.start()
    try:
        await aws_call(
            cfn.delete_stack, **drop_none({"StackName": deploy_name, "RoleARN": options.role_arn})
        )
        destroyed = await wait_for_stack_delete(cfn, deploy_name)
        if destroyed.exists and not destroyed.status.is_deleted:
            raise StackDestroyFailed(
                f"Failed to destroy {deploy_name}: {destroyed.status}", stack_name=deploy_name
            )
    finally:
        if monitor is not None:
            await monitor.stop()
    logger.info("Stack destroyed", stack_name=deploy_name)
