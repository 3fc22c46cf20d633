"""Shared pytest fixtures for stack deployer tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from stack_deployer.core.aws import Sdk, SdkProvider
from stack_deployer.core.settings import deploy_settings
from stack_deployer.core.toolkit_info import StagingEnvironmentInfo, ToolkitResourcesInfo
from stack_deployer.models.artifacts import Environment
from tests.helpers import ACCOUNT, REGION, STACK_ID, FakeMonitor, client_error, stack_not_found


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    """Remove waits between status polls."""
    monkeypatch.setattr(deploy_settings, "change_set_poll_interval", 0)
    monkeypatch.setattr(deploy_settings, "stack_poll_interval", 0)
    monkeypatch.setattr(deploy_settings, "activity_poll_interval", 0)


@pytest.fixture
def monitor_factory():
    """Factory for FakeMonitor, reset per test."""
    FakeMonitor.instances = []
    return FakeMonitor


@pytest.fixture
def environment() -> Environment:
    return Environment(account=ACCOUNT, region=REGION)


@pytest.fixture
def cfn() -> MagicMock:
    """CloudFormation client for a stack that does not exist yet."""
    client = MagicMock()
    client.describe_stacks.side_effect = stack_not_found()
    client.get_template.return_value = {"TemplateBody": {}}
    client.create_change_set.return_value = {"Id": "changeset-arn", "StackId": STACK_ID}
    client.describe_change_set.return_value = {
        "ChangeSetId": "changeset-arn",
        "StackId": STACK_ID,
        "Status": "CREATE_COMPLETE",
        "Changes": [{"Type": "Resource"}],
    }
    client.describe_stack_events.return_value = {"StackEvents": []}
    return client


@pytest.fixture
def ecr() -> MagicMock:
    client = MagicMock()
    client.describe_repositories.side_effect = client_error("RepositoryNotFoundException")
    client.create_repository.return_value = {
        "repository": {"repositoryUri": f"{ACCOUNT}.dkr.ecr.{REGION}.amazonaws.com/repo"}
    }
    return client


@pytest.fixture
def s3() -> MagicMock:
    client = MagicMock()
    client.list_objects_v2.return_value = {}
    return client


@pytest.fixture
def ssm() -> MagicMock:
    client = MagicMock()
    client.get_parameter.side_effect = client_error("ParameterNotFound")
    return client


@pytest.fixture
def sdk(cfn, ecr, s3, ssm) -> MagicMock:
    """SDK whose clients are the mocks above."""
    mock_sdk = MagicMock(spec=Sdk)
    mock_sdk.cloudformation.return_value = cfn
    mock_sdk.ecr.return_value = ecr
    mock_sdk.s3.return_value = s3
    mock_sdk.ssm.return_value = ssm
    return mock_sdk


@pytest.fixture
def sdk_provider(sdk, environment) -> MagicMock:
    """SDK provider that resolves every environment to the test account."""
    provider = MagicMock(spec=SdkProvider)
    provider.resolve_environment = AsyncMock(return_value=environment)
    provider.for_environment = AsyncMock(return_value=sdk)
    provider.base_credentials_partition = AsyncMock(return_value="aws")
    return provider


@pytest.fixture
def toolkit_info(sdk) -> ToolkitResourcesInfo:
    """Staging resources at bootstrap version 5."""
    return ToolkitResourcesInfo(
        sdk,
        StagingEnvironmentInfo(
            bucket_name="staging-bucket",
            bucket_domain_name="staging-bucket.s3.amazonaws.com",
            qualifier="hnb659fds",
            version=5,
        ),
    )
