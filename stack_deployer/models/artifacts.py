"""Cloud assembly artifact models: environments, stacks and their assets."""

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ..constants import UNKNOWN_ACCOUNT, UNKNOWN_REGION


class ArtifactModel(BaseModel):
    """Base model accepting both snake_case and cloud assembly camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Environment(ArtifactModel):
    """Target account and region of a stack."""

    account: str
    region: str
    name: str = ""

    @model_validator(mode="after")
    def _default_name(self) -> "Environment":
        if not self.name:
            self.name = f"aws://{self.account}/{self.region}"
        return self

    @property
    def is_resolved(self) -> bool:
        return self.account != UNKNOWN_ACCOUNT and self.region != UNKNOWN_REGION


class FileAssetMetadata(ArtifactModel):
    """A file or directory asset recorded in template metadata."""

    packaging: Literal["file", "zip"]
    id: str
    source_hash: str
    path: str
    s3_bucket_parameter: str
    s3_key_parameter: str
    artifact_hash_parameter: str


class ContainerImageAssetMetadata(ArtifactModel):
    """A Docker image asset recorded in template metadata.

    Older assemblies name an ``image_name_parameter`` and leave the repository
    to be derived from the asset id. Newer ones omit the parameter and always
    name a shared ``repository_name`` together with an ``image_tag``.
    """

    packaging: Literal["container-image"]
    id: str
    source_hash: str
    path: str
    image_name_parameter: str | None = None
    repository_name: str | None = None
    image_tag: str | None = None
    build_args: dict[str, str] | None = None
    target: str | None = None
    file: str | None = None


AssetMetadata = Annotated[
    FileAssetMetadata | ContainerImageAssetMetadata, Field(discriminator="packaging")
]


class AssetManifestArtifact(ArtifactModel):
    """A separately declared asset manifest that a stack depends on."""

    id: str
    file: Path
    requires_bootstrap_stack_version: int | None = None


class StackArtifact(ArtifactModel):
    """A synthesized stack ready for deployment."""

    id: str
    stack_name: str
    display_name: str = ""
    template: dict[str, Any] = Field(default_factory=dict)
    template_file: str = ""
    assembly_directory: Path = Path(".")
    environment: Environment
    assets: list[AssetMetadata] = Field(default_factory=list)
    asset_manifests: list[AssetManifestArtifact] = Field(default_factory=list)
    termination_protection: bool | None = None
    requires_bootstrap_stack_version: int | None = None
    stack_template_asset_object_url: str | None = None
    assume_role_arn: str | None = None
    cloudformation_execution_role_arn: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_display_name(self) -> "StackArtifact":
        if not self.display_name:
            self.display_name = self.id
        if not self.template_file:
            self.template_file = f"{self.stack_name}.template.json"
        return self

    @property
    def template_path(self) -> Path:
        return self.assembly_directory / self.template_file

    @property
    def resource_count(self) -> int:
        return len(self.template.get("Resources") or {})
