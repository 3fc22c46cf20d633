"""CloudFormation primitives: stack lookup, change set description, waiters
and template parameter reconciliation."""

import asyncio
import json
from typing import Any, Literal

import yaml
from botocore.exceptions import ClientError

from ..constants import NO_CHANGE_REASON_PREFIXES, STACK_NOT_FOUND_CODE
from ..models.deployment import ChangeSetDescriptor, StackSnapshot
from .aws import aws_call, error_code, error_message
from .exceptions import ChangeSetCreationFailed, MissingParameters, StackDeployFailed
from .logging_config import get_deploy_logger
from .settings import deploy_settings

logger = get_deploy_logger()


class CloudFormationYamlLoader(yaml.SafeLoader):
    """Safe YAML loader that understands CloudFormation short-form intrinsics.

    Date-like scalars such as ``AWSTemplateFormatVersion: 2010-09-09`` stay strings.
    """


CloudFormationYamlLoader.yaml_implicit_resolvers = {
    first: [r for r in resolvers if r[0] != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    """Turn ``!Ref X`` into ``{"Ref": "X"}``, ``!Sub s`` into ``{"Fn::Sub": s}``, etc."""
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix in ("Ref", "Condition"):
        return {tag_suffix: value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)
    return {f"Fn::{tag_suffix}": value}


CloudFormationYamlLoader.add_multi_constructor("!", _construct_intrinsic)


def _is_stack_not_found(exc: ClientError) -> bool:
    return error_code(exc) == STACK_NOT_FOUND_CODE and "does not exist" in error_message(exc)


def parse_template_body(body: str | dict[str, Any]) -> dict[str, Any]:
    """Parse a template returned by GetTemplate (JSON, YAML or already decoded)."""
    if isinstance(body, dict):
        return body
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        loaded = yaml.load(body, Loader=CloudFormationYamlLoader)
        return loaded if isinstance(loaded, dict) else {}


async def lookup_stack(cfn: Any, stack_name: str, fetch_template: bool = True) -> StackSnapshot:
    """Read the current state of a stack.

    A stack that does not exist is a valid result, not an error. Every other
    API failure propagates unchanged.
    """
    try:
        response = await aws_call(cfn.describe_stacks, StackName=stack_name)
    except ClientError as e:
        if _is_stack_not_found(e):
            return StackSnapshot.does_not_exist(stack_name)
        raise

    stacks = response.get("Stacks") or []
    if not stacks:
        return StackSnapshot.does_not_exist(stack_name)

    template: dict[str, Any] = {}
    if fetch_template:
        template_response = await aws_call(
            cfn.get_template, StackName=stack_name, TemplateStage="Original"
        )
        template = parse_template_body(template_response.get("TemplateBody") or {})

    return StackSnapshot.from_description(stack_name, stacks[0], template)


def change_set_has_no_changes(description: dict[str, Any]) -> bool:
    """Whether a change set failed only because there was nothing to change."""
    if description.get("Status") != "FAILED":
        return False
    reason = description.get("StatusReason") or ""
    return any(reason.startswith(prefix) for prefix in NO_CHANGE_REASON_PREFIXES)


async def describe_change_set(cfn: Any, stack_name: str, change_set_name: str) -> dict[str, Any]:
    """Describe a change set, collecting every page of changes."""
    response = await aws_call(
        cfn.describe_change_set, StackName=stack_name, ChangeSetName=change_set_name
    )
    changes = list(response.get("Changes") or [])
    next_token = response.get("NextToken")
    while next_token:
        page = await aws_call(
            cfn.describe_change_set,
            StackName=stack_name,
            ChangeSetName=change_set_name,
            NextToken=next_token,
        )
        changes.extend(page.get("Changes") or [])
        next_token = page.get("NextToken")
    return {**response, "Changes": changes}


async def wait_for_change_set(
    cfn: Any,
    stack_name: str,
    change_set_name: str,
    change_set_type: Literal["CREATE", "UPDATE"],
    poll_interval: float | None = None,
) -> ChangeSetDescriptor:
    """Wait until a change set has finished creating.

    A change set that failed because it contains no changes counts as stable.
    """
    interval = deploy_settings.change_set_poll_interval if poll_interval is None else poll_interval
    logger.debug("Waiting for change set", stack_name=stack_name, change_set=change_set_name)

    while True:
        description = await describe_change_set(cfn, stack_name, change_set_name)
        status = description.get("Status")
        if status in ("CREATE_PENDING", "CREATE_IN_PROGRESS"):
            logger.debug("Change set not yet stable", change_set=change_set_name, status=status)
            await asyncio.sleep(interval)
            continue

        no_changes = change_set_has_no_changes(description)
        if status == "CREATE_COMPLETE" or no_changes:
            changes = description.get("Changes") or []
            return ChangeSetDescriptor(
                id=description.get("ChangeSetId", change_set_name),
                name=change_set_name,
                stack_id=description.get("StackId", ""),
                type=change_set_type,
                change_count=len(changes),
                creation_time=description.get("CreationTime"),
                status=status,
                status_reason=description.get("StatusReason"),
                has_no_changes=no_changes or (status == "CREATE_COMPLETE" and not changes),
            )

        raise ChangeSetCreationFailed(
            f"Failed to create ChangeSet {change_set_name} on {stack_name}: "
            f"{status or 'NO_STATUS'}, {description.get('StatusReason') or 'no reason provided'}",
            stack_name=stack_name,
        )


async def stabilize_stack(
    cfn: Any, stack_name: str, poll_interval: float | None = None
) -> StackSnapshot:
    """Wait until the stack has no operation in progress and return its snapshot."""
    interval = deploy_settings.stack_poll_interval if poll_interval is None else poll_interval
    logger.debug("Waiting for stack to stabilize", stack_name=stack_name)

    while True:
        snapshot = await lookup_stack(cfn, stack_name, fetch_template=False)
        if not snapshot.exists:
            logger.debug("Stack does not exist", stack_name=stack_name)
            return snapshot
        if snapshot.status.is_in_progress:
            logger.debug(
                "Stack has an ongoing operation", stack_name=stack_name, status=str(snapshot.status)
            )
            await asyncio.sleep(interval)
            continue
        if snapshot.status.is_review_in_progress:
            # A creation interrupted before its change set was executed
            logger.debug("Stack is in review", stack_name=stack_name)
        return snapshot


async def wait_for_stack_deploy(
    cfn: Any, stack_name: str, poll_interval: float | None = None
) -> StackSnapshot | None:
    """Wait for a create/update to finish.

    Returns ``None`` if the stack no longer exists. Raises
    ``StackDeployFailed`` unless the terminal status is a success.
    """
    snapshot = await stabilize_stack(cfn, stack_name, poll_interval)
    if not snapshot.exists:
        return None

    status = snapshot.status
    if status.is_creation_failure:
        raise StackDeployFailed(
            f"The stack named {stack_name} failed creation, it may need to be manually "
            f"deleted from the AWS console: {status}",
            stack_name=stack_name,
        )
    if not status.is_deploy_success:
        raise StackDeployFailed(
            f"The stack named {stack_name} failed to deploy: {status}", stack_name=stack_name
        )
    return snapshot


async def wait_for_stack_delete(
    cfn: Any, stack_name: str, poll_interval: float | None = None
) -> StackSnapshot:
    """Wait for a delete to finish and return the terminal snapshot.

    Callers decide what a status other than DELETE_COMPLETE means.
    """
    return await stabilize_stack(cfn, stack_name, poll_interval)


class TemplateParameters:
    """The formal parameters declared by a template."""

    def __init__(self, params: dict[str, dict[str, Any]]):
        self.params = params

    @classmethod
    def from_template(cls, template: dict[str, Any]) -> "TemplateParameters":
        return cls(template.get("Parameters") or {})

    def supply_all(self, updates: dict[str, str | None]) -> "ParameterValues":
        """Every parameter must get a value from ``updates`` or its default."""
        return ParameterValues(self.params, updates)

    def update_existing(
        self, updates: dict[str, str | None], previous_values: dict[str, str]
    ) -> "ParameterValues":
        """Parameters not in ``updates`` keep their currently deployed value."""
        return ParameterValues(self.params, updates, previous_values)


class ParameterValues:
    """Concrete values for a template's parameters, ready for the API."""

    def __init__(
        self,
        formal_params: dict[str, dict[str, Any]],
        updates: dict[str, str | None],
        previous_values: dict[str, str] | None = None,
    ):
        self.formal_params = formal_params
        self.values: dict[str, str] = {}
        self.api_parameters: list[dict[str, Any]] = []
        previous_values = previous_values or {}

        # Precedence: explicit update, previous value, template default
        missing_required = []
        for key, formal in formal_params.items():
            updated = updates.get(key)
            if updated is not None:
                self.values[key] = updated
                self.api_parameters.append({"ParameterKey": key, "ParameterValue": updated})
                continue
            if key in previous_values:
                self.values[key] = previous_values[key]
                self.api_parameters.append({"ParameterKey": key, "UsePreviousValue": True})
                continue
            if "Default" in formal:
                self.values[key] = str(formal["Default"])
                continue
            missing_required.append(key)

        if missing_required:
            raise MissingParameters(
                "The following CloudFormation Parameters are missing a value: "
                + ", ".join(missing_required)
            )

        # Unknown overrides are passed through so CloudFormation reports typos
        for key, value in updates.items():
            if key not in formal_params and value is not None:
                self.values[key] = value
                self.api_parameters.append({"ParameterKey": key, "ParameterValue": value})

    def has_changes(self, current_values: dict[str, str]) -> bool:
        """Whether deploying these values would change the deployed parameters."""
        # SSM-backed values can change without the template changing
        if any(
            str(p.get("Type", "")).startswith("AWS::SSM::Parameter::")
            for p in self.formal_params.values()
        ):
            return True

        if any(key not in self.values for key in current_values):
            return True

        return any(current_values.get(key) != value for key, value in self.values.items())
