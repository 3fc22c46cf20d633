"""Test helpers: canned AWS responses, artifacts and a recording progress monitor."""

from typing import Any

from botocore.exceptions import ClientError

from stack_deployer.models.artifacts import Environment, StackArtifact

ACCOUNT = "123456789012"
REGION = "us-east-1"
STACK_ID = f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:stack/test-stack/abcd"
NO_CHANGES_REASON = (
    "The submitted information didn't contain changes. Submit different information."
)


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    """Build a botocore ClientError the way the service would raise it."""
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def stack_not_found(stack_name: str = "test-stack") -> ClientError:
    return client_error(
        "ValidationError", f"Stack with id {stack_name} does not exist", "DescribeStacks"
    )


def stack_description(
    status: str = "CREATE_COMPLETE",
    stack_name: str = "test-stack",
    **overrides: Any,
) -> dict[str, Any]:
    """A DescribeStacks response holding one stack."""
    stack = {
        "StackName": stack_name,
        "StackId": STACK_ID,
        "StackStatus": status,
        "Parameters": [],
        "Outputs": [],
        "Tags": [],
        "EnableTerminationProtection": False,
    }
    stack.update(overrides)
    return {"Stacks": [stack]}


def make_stack(**overrides: Any) -> StackArtifact:
    """Build a stack artifact with a single resource in a resolved environment."""
    values: dict[str, Any] = {
        "id": "TestStack",
        "stack_name": "test-stack",
        "template": {"Resources": {"Queue": {"Type": "AWS::SQS::Queue"}}},
        "environment": Environment(account=ACCOUNT, region=REGION),
    }
    values.update(overrides)
    return StackArtifact(**values)


class FakeMonitor:
    """Progress monitor that records its lifecycle."""

    instances: list["FakeMonitor"] = []

    def __init__(self, cfn, stack_name, resources_total, creation_time):
        self.stack_name = stack_name
        self.resources_total = resources_total
        self.creation_time = creation_time
        self.started = False
        self.stopped = False
        FakeMonitor.instances.append(self)

    def start(self):
        self.started = True
        return self

    async def stop(self):
        self.stopped = True


