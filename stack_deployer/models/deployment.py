"""Deployment state and request/response models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..core.settings import deploy_settings
from .artifacts import Environment, StackArtifact


class Tag(BaseModel):
    """A stack tag."""

    key: str
    value: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_api(cls, data: dict[str, str]) -> "Tag":
        return cls(key=data["Key"], value=data["Value"])

    def to_api(self) -> dict[str, str]:
        return {"Key": self.key, "Value": self.value}


class StackStatus(BaseModel):
    """CloudFormation stack status with the predicates deployment logic branches on."""

    name: str
    reason: str | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_creation_failure(self) -> bool:
        return self.name in ("CREATE_FAILED", "ROLLBACK_COMPLETE", "ROLLBACK_FAILED")

    @property
    def is_deleted(self) -> bool:
        return self.name == "DELETE_COMPLETE"

    @property
    def is_failure(self) -> bool:
        return self.name.endswith("FAILED")

    @property
    def is_in_progress(self) -> bool:
        return self.name.endswith("_IN_PROGRESS") and not self.is_review_in_progress

    @property
    def is_review_in_progress(self) -> bool:
        return self.name == "REVIEW_IN_PROGRESS"

    @property
    def is_not_found(self) -> bool:
        return self.name == "NOT_FOUND"

    @property
    def is_deploy_success(self) -> bool:
        return self.name in ("CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE")

    def __str__(self) -> str:
        return f"{self.name} ({self.reason})" if self.reason else self.name


class StackSnapshot(BaseModel):
    """The deployed state of a stack at one point in time."""

    stack_name: str
    exists: bool
    status: StackStatus
    stack_id: str | None = None
    parameters: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    tags: list[Tag] = Field(default_factory=list)
    termination_protection: bool = False
    template: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def does_not_exist(cls, stack_name: str) -> "StackSnapshot":
        return cls(
            stack_name=stack_name,
            exists=False,
            status=StackStatus(name="NOT_FOUND", reason="Stack not found during lookup"),
        )

    @classmethod
    def from_description(
        cls, stack_name: str, description: dict[str, Any], template: dict[str, Any] | None = None
    ) -> "StackSnapshot":
        """Build a snapshot from a DescribeStacks entry."""
        return cls(
            stack_name=stack_name,
            exists=True,
            status=StackStatus(
                name=description["StackStatus"], reason=description.get("StackStatusReason")
            ),
            stack_id=description.get("StackId"),
            parameters={
                p["ParameterKey"]: p.get("ParameterValue", "")
                for p in description.get("Parameters") or []
            },
            outputs={
                o["OutputKey"]: o.get("OutputValue", "") for o in description.get("Outputs") or []
            },
            tags=[Tag.from_api(t) for t in description.get("Tags") or []],
            termination_protection=bool(description.get("EnableTerminationProtection", False)),
            template=template or {},
        )


class ChangeSetDescriptor(BaseModel):
    """A created change set, as described once it has stabilized."""

    id: str
    name: str
    stack_id: str
    type: Literal["CREATE", "UPDATE"]
    change_count: int = 0
    creation_time: datetime | None = None
    status: str
    status_reason: str | None = None
    has_no_changes: bool = False


class DeploymentResult(BaseModel):
    """Outcome of a single stack deployment."""

    no_op: bool
    outputs: dict[str, str] = Field(default_factory=dict)
    stack_arn: str | None = None
    stack_artifact: StackArtifact


@dataclass
class DeployStackOptions:
    """Everything a single stack deployment needs, with defaults resolved once.

    Callers pass ``None`` for anything they do not care about; the resolved
    value is what every later step reads.
    """

    stack: StackArtifact
    resolved_environment: Environment
    deploy_name: str | None = None
    parameters: dict[str, str | None] = field(default_factory=dict)
    tags: list[Tag] | None = None
    force: bool = False
    execute: bool | None = None
    reuse_assets: list[str] | None = None
    use_previous_parameters: bool = False
    role_arn: str | None = None
    qualifier: str | None = None
    notification_arns: list[str] | None = None
    termination_protection: bool | None = None
    quiet: bool = False

    def __post_init__(self) -> None:
        self.deploy_name = self.deploy_name or self.stack.stack_name
        self.tags = list(self.tags or [])
        self.execute = True if self.execute is None else self.execute
        self.reuse_assets = list(self.reuse_assets or [])
        self.qualifier = self.qualifier or deploy_settings.bootstrap_qualifier
        self.notification_arns = list(self.notification_arns or [])
        if self.termination_protection is None:
            self.termination_protection = bool(self.stack.termination_protection)


@dataclass
class DestroyStackOptions:
    """Options for tearing a stack down."""

    stack: StackArtifact
    deploy_name: str | None = None
    role_arn: str | None = None
    quiet: bool = False

    def __post_init__(self) -> None:
        self.deploy_name = self.deploy_name or self.stack.stack_name
