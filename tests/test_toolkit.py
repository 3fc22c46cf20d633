"""Tests for deploying and destroying lists of stacks."""

import json
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest
from structlog.testing import capture_logs

from stack_deployer.models.deployment import DeploymentResult, Tag
from stack_deployer.services.deployments import CloudFormationDeployments
from stack_deployer.services.toolkit import (
    StackParameterMap,
    StackToolkit,
    ToolkitDeployOptions,
    tags_for_stack,
)
from tests.helpers import make_stack


@pytest.fixture
def cloudformation():
    deployments = MagicMock(spec=CloudFormationDeployments)

    async def deploy(stack, **kwargs):
        return DeploymentResult(
            no_op=False,
            outputs={"Name": stack.stack_name},
            stack_arn=f"arn:{stack.stack_name}",
            stack_artifact=stack,
        )

    deployments.deploy_stack = AsyncMock(side_effect=deploy)
    deployments.destroy_stack = AsyncMock()
    deployments.stack_exists = AsyncMock(return_value=False)
    return deployments


def empty_stack(**overrides):
    return make_stack(id="Empty", stack_name="empty-stack", template={}, **overrides)


class TestStackParameterMap:
    """Test per-stack parameter overrides."""

    def test_wildcard_and_specific(self):
        parameters = StackParameterMap.from_overrides(
            {"Env": "dev", "test-stack:Env": "prod", "other:Size": "1"}
        )

        assert parameters.for_stack("test-stack") == {"Env": "prod"}
        assert parameters.for_stack("other") == {"Env": "dev", "Size": "1"}
        assert parameters.for_stack("unknown") == {"Env": "dev"}

    def test_empty(self):
        assert StackParameterMap().for_stack("test-stack") == {}


class TestDeploy:
    """Test deploying several stacks."""

    @pytest.mark.asyncio
    async def test_stacks_deployed_in_order(self, cloudformation):
        first = make_stack(id="First", stack_name="first")
        second = make_stack(id="Second", stack_name="second")

        outputs = await StackToolkit(cloudformation).deploy([first, second])

        deployed = [c.args[0].stack_name for c in cloudformation.deploy_stack.call_args_list]
        assert deployed == ["first", "second"]
        assert outputs == {"first": {"Name": "first"}, "second": {"Name": "second"}}

    @pytest.mark.asyncio
    async def test_options_are_forwarded(self, cloudformation):
        options = ToolkitDeployOptions(
            parameters=StackParameterMap.from_overrides({"Env": "prod"}),
            role_arn="arn:aws:iam::1:role/exec",
            force=True,
            execute=False,
            quiet=True,
        )

        await StackToolkit(cloudformation).deploy([make_stack()], options)

        kwargs = cloudformation.deploy_stack.call_args.kwargs
        assert kwargs["deploy_name"] == "test-stack"
        assert kwargs["parameters"] == {"Env": "prod"}
        assert kwargs["role_arn"] == "arn:aws:iam::1:role/exec"
        assert kwargs["force"] is True
        assert kwargs["execute"] is False
        assert kwargs["quiet"] is True

    @pytest.mark.asyncio
    async def test_stack_tags_used_by_default(self, cloudformation):
        await StackToolkit(cloudformation).deploy([make_stack(tags={"team": "infra"})])

        assert cloudformation.deploy_stack.call_args.kwargs["tags"] == [
            Tag(key="team", value="infra")
        ]

    @pytest.mark.asyncio
    async def test_explicit_tags_win(self, cloudformation):
        options = ToolkitDeployOptions(tags=[Tag(key="owner", value="me")])

        await StackToolkit(cloudformation).deploy([make_stack(tags={"team": "infra"})], options)

        assert cloudformation.deploy_stack.call_args.kwargs["tags"] == [
            Tag(key="owner", value="me")
        ]

    @pytest.mark.asyncio
    async def test_empty_stack_is_skipped(self, cloudformation):
        """A stack without resources that was never deployed is skipped with a warning."""
        with capture_logs() as logs:
            toolkit = StackToolkit(cloudformation)
            await toolkit.deploy([empty_stack()])

        cloudformation.deploy_stack.assert_not_awaited()
        cloudformation.destroy_stack.assert_not_awaited()
        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert len(warnings) == 1
        assert "no resources" in warnings[0]["event"]
        assert "skipping deployment" in warnings[0]["event"]

    @pytest.mark.asyncio
    async def test_empty_existing_stack_is_destroyed(self, cloudformation):
        cloudformation.stack_exists.return_value = True

        await StackToolkit(cloudformation).deploy(
            [empty_stack()], ToolkitDeployOptions(role_arn="arn:aws:iam::1:role/exec")
        )

        cloudformation.deploy_stack.assert_not_awaited()
        cloudformation.destroy_stack.assert_awaited_once()
        kwargs = cloudformation.destroy_stack.call_args.kwargs
        assert kwargs["role_arn"] == "arn:aws:iam::1:role/exec"

    @pytest.mark.asyncio
    async def test_failure_stops_deployment(self, cloudformation):
        cloudformation.deploy_stack.side_effect = RuntimeError("boom")
        first = make_stack(id="First", stack_name="first")
        second = make_stack(id="Second", stack_name="second")

        with pytest.raises(RuntimeError, match="boom"):
            await StackToolkit(cloudformation).deploy([first, second])

        assert cloudformation.deploy_stack.await_count == 1

    @pytest.mark.asyncio
    async def test_outputs_file(self, cloudformation, tmp_path):
        outputs_file = tmp_path / "out" / "outputs.json"

        await StackToolkit(cloudformation).deploy(
            [make_stack()], ToolkitDeployOptions(outputs_file=outputs_file)
        )

        assert json.loads(outputs_file.read_text()) == {"test-stack": {"Name": "test-stack"}}

    @pytest.mark.asyncio
    async def test_outputs_written_on_failure(self, cloudformation, tmp_path):
        """Outputs of stacks deployed before a failure are still written."""
        outputs_file = tmp_path / "outputs.json"
        deploy = cloudformation.deploy_stack.side_effect

        async def fail_second(stack, **kwargs):
            if stack.stack_name == "second":
                raise RuntimeError("boom")
            return await deploy(stack, **kwargs)

        cloudformation.deploy_stack.side_effect = fail_second
        first = make_stack(id="First", stack_name="first")
        second = make_stack(id="Second", stack_name="second")

        with pytest.raises(RuntimeError):
            await StackToolkit(cloudformation).deploy(
                [first, second], ToolkitDeployOptions(outputs_file=outputs_file)
            )

        assert json.loads(outputs_file.read_text()) == {"first": {"Name": "first"}}


class TestDestroy:
    """Test destroying several stacks."""

    @pytest.mark.asyncio
    async def test_reverse_order(self, cloudformation):
        first = make_stack(id="First", stack_name="first")
        second = make_stack(id="Second", stack_name="second")

        await StackToolkit(cloudformation).destroy([first, second], role_arn="arn:role")

        assert cloudformation.destroy_stack.await_args_list == [
            call(second, deploy_name="second", role_arn="arn:role"),
            call(first, deploy_name="first", role_arn="arn:role"),
        ]

    @pytest.mark.asyncio
    async def test_failure_propagates(self, cloudformation):
        cloudformation.destroy_stack.side_effect = RuntimeError("delete failed")

        with pytest.raises(RuntimeError, match="delete failed"):
            await StackToolkit(cloudformation).destroy([make_stack()])


def test_tags_for_stack():
    assert tags_for_stack(make_stack(tags={"a": "1"})) == [Tag(key="a", value="1")]


class TestFromEnvironment:
    """Test building a toolkit from environment configuration."""

    def test_logging_configured_when_log_dir_set(self, tmp_path):
        settings = MagicMock(log_dir=tmp_path, log_level="DEBUG")
        with (
            patch("stack_deployer.services.toolkit.load_settings", return_value=settings) as load,
            patch("stack_deployer.services.toolkit.setup_logging") as setup,
            patch("stack_deployer.services.toolkit.SdkProvider") as provider_cls,
        ):
            toolkit = StackToolkit.from_environment("dev", env_file=tmp_path / ".env")

        load.assert_called_once_with(tmp_path / ".env")
        setup.assert_called_once_with(tmp_path, "DEBUG")
        provider_cls.assert_called_once_with(profile_name="dev")
        assert toolkit.cloudformation.sdk_provider is provider_cls.return_value

    def test_logging_left_alone_without_log_dir(self):
        settings = MagicMock(log_dir=None, log_level=None)
        with (
            patch("stack_deployer.services.toolkit.load_settings", return_value=settings),
            patch("stack_deployer.services.toolkit.setup_logging") as setup,
            patch("stack_deployer.services.toolkit.SdkProvider"),
        ):
            StackToolkit.from_environment()

        setup.assert_not_called()
