"""
Tests for the change set engine and the destroy engine.

The CloudFormation client is a MagicMock; ``describe_stacks`` side effects
script the lifecycle of the stack across lookups and waits.
"""

from unittest.mock import AsyncMock, patch

import pytest
import yaml

from stack_deployer.core.exceptions import (
    ConfigurationError,
    MissingParameters,
    StackDeployFailed,
    StackDestroyFailed,
    StackDisappeared,
    TemplateTooLarge,
    UnrecoverableFailedStack,
)
from stack_deployer.core.settings import deploy_settings
from stack_deployer.models.artifacts import Environment, FileAssetMetadata
from stack_deployer.models.deployment import DeployStackOptions, DestroyStackOptions, Tag
from stack_deployer.services.deploy_stack import (
    deploy_stack,
    destroy_stack,
    rest_url_from_manifest,
)
from tests.helpers import (
    ACCOUNT,
    NO_CHANGES_REASON,
    REGION,
    STACK_ID,
    FakeMonitor,
    make_stack,
    stack_description,
    stack_not_found,
)

OUTPUTS = [{"OutputKey": "QueueUrl", "OutputValue": "https://sqs/queue"}]


def deploy_options(stack=None, **overrides) -> DeployStackOptions:
    stack = stack or make_stack()
    return DeployStackOptions(stack=stack, resolved_environment=stack.environment, **overrides)


def call_names(mock) -> list[str]:
    return [name for name, _args, _kwargs in mock.mock_calls]


@pytest.fixture
def mock_publish():
    with patch(
        "stack_deployer.services.deploy_stack.publish_assets", new_callable=AsyncMock
    ) as publish:
        yield publish


class TestDeployNewStack:
    """Test creating a stack that does not exist yet."""

    @pytest.mark.asyncio
    async def test_create_and_execute(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [
            stack_not_found(),
            stack_description("CREATE_COMPLETE", Outputs=OUTPUTS),
        ]

        result = await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert result.no_op is False
        assert result.outputs == {"QueueUrl": "https://sqs/queue"}
        assert result.stack_arn == STACK_ID

        kwargs = cfn.create_change_set.call_args.kwargs
        assert kwargs["StackName"] == "test-stack"
        assert kwargs["ChangeSetType"] == "CREATE"
        assert kwargs["ChangeSetName"].startswith("CDK-")
        assert kwargs["Description"] == f"CDK Changeset for execution {kwargs['ChangeSetName'][4:]}"
        assert yaml.safe_load(kwargs["TemplateBody"]) == make_stack().template
        assert "CAPABILITY_AUTO_EXPAND" in kwargs["Capabilities"]
        assert "RoleARN" not in kwargs
        cfn.execute_change_set.assert_called_once_with(
            StackName="test-stack", ChangeSetName=kwargs["ChangeSetName"]
        )

    @pytest.mark.asyncio
    async def test_request_fields(self, cfn, sdk, sdk_provider, monitor_factory):
        """Role, notifications and tags are passed to CreateChangeSet."""
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]
        options = deploy_options(
            role_arn="arn:aws:iam::123456789012:role/cfn-exec",
            notification_arns=["arn:aws:sns:us-east-1:123456789012:topic"],
            tags=[Tag(key="team", value="infra")],
        )

        await deploy_stack(options, sdk, sdk_provider, None, monitor_factory)

        kwargs = cfn.create_change_set.call_args.kwargs
        assert kwargs["RoleARN"] == "arn:aws:iam::123456789012:role/cfn-exec"
        assert kwargs["NotificationARNs"] == ["arn:aws:sns:us-east-1:123456789012:topic"]
        assert kwargs["Tags"] == [{"Key": "team", "Value": "infra"}]

    @pytest.mark.asyncio
    async def test_monitor_lifecycle(self, cfn, sdk, sdk_provider, monitor_factory):
        """The monitor is sized from the change set and stopped afterwards."""
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]

        await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert len(FakeMonitor.instances) == 1
        monitor = FakeMonitor.instances[0]
        assert monitor.started and monitor.stopped
        assert monitor.resources_total == 1

    @pytest.mark.asyncio
    async def test_quiet_has_no_monitor(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]

        await deploy_stack(deploy_options(quiet=True), sdk, sdk_provider, None, monitor_factory)

        assert FakeMonitor.instances == []

    @pytest.mark.asyncio
    async def test_missing_parameters(self, cfn, sdk, sdk_provider, monitor_factory):
        """Parameters without values fail before any change set is created."""
        stack = make_stack(
            template={
                "Parameters": {"Env": {"Type": "String"}},
                "Resources": {"Queue": {"Type": "AWS::SQS::Queue"}},
            }
        )

        with pytest.raises(MissingParameters, match="Env"):
            await deploy_stack(deploy_options(stack), sdk, sdk_provider, None, monitor_factory)

        cfn.create_change_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_stack_in_review_is_created(self, cfn, sdk, sdk_provider, monitor_factory):
        """A stack whose first change set never ran still uses a CREATE change set."""
        cfn.describe_stacks.side_effect = [
            stack_description("REVIEW_IN_PROGRESS"),
            stack_description(),
        ]

        await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert cfn.create_change_set.call_args.kwargs["ChangeSetType"] == "CREATE"


class TestFailedCreationRecovery:
    """Test replacing a stack that previously failed to create."""

    @pytest.mark.asyncio
    async def test_failed_stack_is_deleted_before_create(
        self, cfn, sdk, sdk_provider, monitor_factory
    ):
        cfn.describe_stacks.side_effect = [
            stack_description("ROLLBACK_COMPLETE"),
            stack_not_found(),
            stack_description("CREATE_COMPLETE"),
        ]

        result = await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert result.no_op is False
        cfn.delete_stack.assert_called_once_with(StackName="test-stack")
        names = call_names(cfn)
        assert names.index("delete_stack") < names.index("create_change_set")
        assert cfn.create_change_set.call_args.kwargs["ChangeSetType"] == "CREATE"

    @pytest.mark.asyncio
    async def test_undeletable_stack(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [
            stack_description("ROLLBACK_COMPLETE"),
            stack_description("DELETE_FAILED"),
        ]

        with pytest.raises(UnrecoverableFailedStack, match="DELETE_FAILED"):
            await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        cfn.delete_stack.assert_called_once()
        cfn.create_change_set.assert_not_called()


class TestDeployExistingStack:
    """Test updating, skipping and no-change outcomes for an existing stack."""

    @pytest.fixture
    def existing(self, cfn):
        cfn.describe_stacks.side_effect = None
        cfn.describe_stacks.return_value = stack_description("UPDATE_COMPLETE", Outputs=OUTPUTS)
        return cfn

    @pytest.mark.asyncio
    async def test_unchanged_stack_is_skipped(self, existing, sdk, sdk_provider, monitor_factory):
        existing.get_template.return_value = {"TemplateBody": make_stack().template}

        result = await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert result.no_op is True
        assert result.outputs == {"QueueUrl": "https://sqs/queue"}
        assert result.stack_arn == STACK_ID
        existing.create_change_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_force_deploys_unchanged_stack(
        self, existing, sdk, sdk_provider, monitor_factory
    ):
        existing.get_template.return_value = {"TemplateBody": make_stack().template}

        await deploy_stack(deploy_options(force=True), sdk, sdk_provider, None, monitor_factory)

        assert existing.create_change_set.call_args.kwargs["ChangeSetType"] == "UPDATE"

    @pytest.mark.asyncio
    async def test_change_set_without_changes(
        self, existing, sdk, sdk_provider, monitor_factory
    ):
        """An empty change set is deleted and nothing is executed."""
        existing.describe_change_set.return_value = {
            "Status": "FAILED",
            "StatusReason": NO_CHANGES_REASON,
        }

        result = await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert result.no_op is True
        assert result.outputs == {"QueueUrl": "https://sqs/queue"}
        assert result.stack_arn == STACK_ID
        change_set_name = existing.create_change_set.call_args.kwargs["ChangeSetName"]
        existing.delete_change_set.assert_called_once_with(
            StackName="test-stack", ChangeSetName=change_set_name
        )
        existing.execute_change_set.assert_not_called()
        assert FakeMonitor.instances == []

    @pytest.mark.asyncio
    async def test_no_execute(self, existing, sdk, sdk_provider, monitor_factory):
        """The change set is left for review."""
        result = await deploy_stack(
            deploy_options(execute=False), sdk, sdk_provider, None, monitor_factory
        )

        assert result.no_op is False
        existing.execute_change_set.assert_not_called()
        existing.delete_change_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_previous_parameters(self, existing, sdk, sdk_provider, monitor_factory):
        existing.describe_stacks.return_value = stack_description(
            "UPDATE_COMPLETE", Parameters=[{"ParameterKey": "Env", "ParameterValue": "prod"}]
        )
        stack = make_stack(
            template={
                "Parameters": {"Env": {"Type": "String"}},
                "Resources": {"Queue": {"Type": "AWS::SQS::Queue"}},
            }
        )

        await deploy_stack(
            deploy_options(stack, use_previous_parameters=True),
            sdk,
            sdk_provider,
            None,
            monitor_factory,
        )

        assert existing.create_change_set.call_args.kwargs["Parameters"] == [
            {"ParameterKey": "Env", "UsePreviousValue": True}
        ]


class TestTerminationProtection:
    """Test reconciling termination protection after the change set is created."""

    @pytest.mark.asyncio
    async def test_enabled_on_new_stack(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]
        stack = make_stack(termination_protection=True)

        await deploy_stack(deploy_options(stack), sdk, sdk_provider, None, monitor_factory)

        cfn.update_termination_protection.assert_called_once_with(
            StackName="test-stack", EnableTerminationProtection=True
        )

    @pytest.mark.asyncio
    async def test_disabled_on_existing_stack(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = None
        cfn.describe_stacks.return_value = stack_description(
            "UPDATE_COMPLETE", EnableTerminationProtection=True
        )

        await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        cfn.update_termination_protection.assert_called_once_with(
            StackName="test-stack", EnableTerminationProtection=False
        )

    @pytest.mark.asyncio
    async def test_unchanged_is_left_alone(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]

        await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        cfn.update_termination_protection.assert_not_called()


class TestExecutionFailures:
    """Test failures while waiting for the executed change set."""

    @pytest.mark.asyncio
    async def test_stack_disappeared(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_not_found()]

        with pytest.raises(StackDisappeared, match="disappeared"):
            await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert FakeMonitor.instances[0].stopped

    @pytest.mark.asyncio
    async def test_rollback_stops_monitor(self, cfn, sdk, sdk_provider, monitor_factory):
        cfn.describe_stacks.side_effect = [
            stack_not_found(),
            stack_description("ROLLBACK_COMPLETE"),
        ]

        with pytest.raises(StackDeployFailed):
            await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert FakeMonitor.instances[0].stopped


class TestTemplateBody:
    """Test how the template is handed to CloudFormation."""

    @pytest.mark.asyncio
    async def test_large_template_without_staging(
        self, cfn, sdk, sdk_provider, monitor_factory, monkeypatch
    ):
        monkeypatch.setattr(deploy_settings, "large_template_size_kb", 0)

        with pytest.raises(TemplateTooLarge) as exc_info:
            await deploy_stack(deploy_options(), sdk, sdk_provider, None, monitor_factory)

        assert "TestStack: Template too large to deploy" in str(exc_info.value)
        assert f"aws://{ACCOUNT}/{REGION}" in exc_info.value.remediation
        cfn.create_change_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_large_template_is_uploaded(
        self,
        cfn,
        sdk,
        sdk_provider,
        toolkit_info,
        monitor_factory,
        mock_publish,
        monkeypatch,
        tmp_path,
    ):
        """The template is published to the staging bucket and passed by URL."""
        monkeypatch.setattr(deploy_settings, "large_template_size_kb", 0)
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]
        stack = make_stack(assembly_directory=tmp_path)

        await deploy_stack(deploy_options(stack), sdk, sdk_provider, toolkit_info, monitor_factory)

        kwargs = cfn.create_change_set.call_args.kwargs
        assert "TemplateBody" not in kwargs
        assert kwargs["TemplateURL"].startswith(
            "https://staging-bucket.s3.amazonaws.com/cdk/TestStack/"
        )
        assert kwargs["TemplateURL"].endswith(".yml")
        mock_publish.assert_awaited_once()
        manifest = mock_publish.call_args.args[0]
        assert len(manifest) == 1
        assert (tmp_path / "assets.json").exists()

    @pytest.mark.asyncio
    async def test_template_asset_url(self, cfn, sdk, sdk_provider, monitor_factory, mock_publish):
        """A pre-published template is referenced directly."""
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]
        stack = make_stack(
            stack_template_asset_object_url="s3://templates-${AWS::AccountId}/t.json"
        )

        await deploy_stack(deploy_options(stack), sdk, sdk_provider, None, monitor_factory)

        assert cfn.create_change_set.call_args.kwargs["TemplateURL"] == (
            f"https://s3.{REGION}.amazonaws.com/templates-{ACCOUNT}/t.json"
        )
        mock_publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_metadata_assets_are_published(
        self, cfn, sdk, sdk_provider, toolkit_info, monitor_factory, mock_publish, tmp_path
    ):
        """Metadata assets override caller parameters and are published before the change set."""
        cfn.describe_stacks.side_effect = [stack_not_found(), stack_description()]
        asset = FileAssetMetadata(
            packaging="zip",
            id="abc",
            source_hash="abc",
            path="asset.abc",
            s3_bucket_parameter="Bucket",
            s3_key_parameter="Key",
            artifact_hash_parameter="Hash",
        )
        stack = make_stack(assets=[asset], assembly_directory=tmp_path)

        await deploy_stack(
            deploy_options(stack, parameters={"Bucket": "caller-value"}),
            sdk,
            sdk_provider,
            toolkit_info,
            monitor_factory,
        )

        parameters = cfn.create_change_set.call_args.kwargs["Parameters"]
        assert {"ParameterKey": "Bucket", "ParameterValue": "staging-bucket"} in parameters
        assert {"ParameterKey": "Key", "ParameterValue": "assets/||abc.zip"} in parameters
        mock_publish.assert_awaited_once()


class TestRestUrl:
    """Test converting s3:// URLs to HTTPS URLs."""

    def test_s3_url(self, environment):
        assert rest_url_from_manifest("s3://bucket/path/t.json", environment) == (
            "https://s3.us-east-1.amazonaws.com/bucket/path/t.json"
        )

    def test_china_region(self):
        environment = Environment(account=ACCOUNT, region="cn-north-1")
        assert rest_url_from_manifest("s3://bucket/t.json", environment) == (
            "https://s3.cn-north-1.amazonaws.com.cn/bucket/t.json"
        )

    def test_placeholders(self, environment):
        url = "s3://cdk-${AWS::AccountId}-${AWS::Region}/t.json"
        assert rest_url_from_manifest(url, environment) == (
            f"https://s3.{REGION}.amazonaws.com/cdk-{ACCOUNT}-{REGION}/t.json"
        )

    def test_partition_placeholder_rejected(self, environment):
        with pytest.raises(ConfigurationError):
            rest_url_from_manifest("s3://bucket-${AWS::Partition}/t.json", environment)

    def test_other_urls_unchanged(self, environment):
        url = "https://example.com/t.json"
        assert rest_url_from_manifest(url, environment) == url


class TestDestroyStack:
    """Test tearing stacks down."""

    @pytest.mark.asyncio
    async def test_missing_stack_is_ignored(self, cfn, sdk, monitor_factory):
        await destroy_stack(DestroyStackOptions(stack=make_stack()), sdk, monitor_factory)

        cfn.delete_stack.assert_not_called()
        assert FakeMonitor.instances == []

    @pytest.mark.asyncio
    async def test_destroy(self, cfn, sdk, monitor_factory):
        cfn.describe_stacks.side_effect = [
            stack_description("UPDATE_COMPLETE"),
            stack_description("DELETE_IN_PROGRESS"),
            stack_not_found(),
        ]
        options = DestroyStackOptions(
            stack=make_stack(), role_arn="arn:aws:iam::123456789012:role/cfn-exec"
        )

        await destroy_stack(options, sdk, monitor_factory)

        cfn.delete_stack.assert_called_once_with(
            StackName="test-stack", RoleARN="arn:aws:iam::123456789012:role/cfn-exec"
        )
        monitor = FakeMonitor.instances[0]
        assert monitor.resources_total == 1
        assert monitor.stopped

    @pytest.mark.asyncio
    async def test_destroy_failed(self, cfn, sdk, monitor_factory):
        cfn.describe_stacks.side_effect = [
            stack_description("UPDATE_COMPLETE"),
            stack_description("DELETE_FAILED"),
        ]

        with pytest.raises(StackDestroyFailed, match="Failed to destroy test-stack: DELETE_FAILED"):
            await destroy_stack(DestroyStackOptions(stack=make_stack()), sdk, monitor_factory)

        assert FakeMonitor.instances[0].stopped

    @pytest.mark.asyncio
    async def test_deleted_status_is_success(self, cfn, sdk, monitor_factory):
        """Some accounts keep returning deleted stacks by id."""
        cfn.describe_stacks.side_effect = [
            stack_description("UPDATE_COMPLETE"),
            stack_description("DELETE_COMPLETE"),
        ]

        await destroy_stack(DestroyStackOptions(stack=make_stack()), sdk, monitor_factory)
