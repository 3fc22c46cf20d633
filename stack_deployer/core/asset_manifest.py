"""Asset manifests: the list of files and images to publish, and where to."""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..constants import ASSET_MANIFEST_VERSION, CURRENT_DESTINATION

MANIFEST_FILE_NAME = "assets.json"


class ManifestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FileSource(ManifestModel):
    path: str
    packaging: Literal["file", "zip"] = "file"


class FileDestination(ManifestModel):
    bucket_name: str
    object_key: str
    region: str | None = None
    assume_role_arn: str | None = None
    assume_role_external_id: str | None = None


class DockerImageSource(ManifestModel):
    directory: str
    docker_build_args: dict[str, str] | None = None
    docker_build_target: str | None = None
    docker_file: str | None = None


class DockerImageDestination(ManifestModel):
    repository_name: str
    image_tag: str
    region: str | None = None
    assume_role_arn: str | None = None
    assume_role_external_id: str | None = None


class FileAsset(ManifestModel):
    source: FileSource
    destinations: dict[str, FileDestination] = Field(default_factory=dict)


class DockerImageAsset(ManifestModel):
    source: DockerImageSource
    destinations: dict[str, DockerImageDestination] = Field(default_factory=dict)


class ManifestDocument(ManifestModel):
    """The on-disk JSON shape of an asset manifest."""

    version: str = ASSET_MANIFEST_VERSION
    files: dict[str, FileAsset] = Field(default_factory=dict)
    docker_images: dict[str, DockerImageAsset] = Field(default_factory=dict)


class FileManifestEntry(BaseModel):
    """One file asset paired with one of its destinations."""

    asset_id: str
    destination_id: str
    source: FileSource
    destination: FileDestination

    @property
    def display_name(self) -> str:
        return f"{self.asset_id}:{self.destination_id}"


class DockerImageManifestEntry(BaseModel):
    """One image asset paired with one of its destinations."""

    asset_id: str
    destination_id: str
    source: DockerImageSource
    destination: DockerImageDestination

    @property
    def display_name(self) -> str:
        return f"{self.asset_id}:{self.destination_id}"


ManifestEntry = FileManifestEntry | DockerImageManifestEntry


class AssetManifest:
    """A parsed asset manifest rooted at a directory.

    Relative source paths in the manifest are resolved against ``directory``.
    """

    def __init__(self, directory: Path, document: ManifestDocument):
        self.directory = Path(directory)
        self.document = document

    @classmethod
    def from_dict(cls, data: dict[str, Any], directory: Path | str = ".") -> "AssetManifest":
        return cls(Path(directory), ManifestDocument.model_validate(data))

    @classmethod
    def from_file(cls, path: Path | str) -> "AssetManifest":
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data, path.parent)

    @property
    def entries(self) -> list[ManifestEntry]:
        entries: list[ManifestEntry] = []
        for asset_id, file_asset in self.document.files.items():
            for destination_id, destination in file_asset.destinations.items():
                entries.append(
                    FileManifestEntry(
                        asset_id=asset_id,
                        destination_id=destination_id,
                        source=file_asset.source,
                        destination=destination,
                    )
                )
        for asset_id, image_asset in self.document.docker_images.items():
            for destination_id, destination in image_asset.destinations.items():
                entries.append(
                    DockerImageManifestEntry(
                        asset_id=asset_id,
                        destination_id=destination_id,
                        source=image_asset.source,
                        destination=destination,
                    )
                )
        return entries

    def __len__(self) -> int:
        return len(self.entries)


class AssetManifestBuilder:
    """Collects assets discovered at deploy time into a manifest.

    Every asset gets a single destination in the environment being deployed to.
    """

    def __init__(self) -> None:
        self.document = ManifestDocument()

    def add_file_asset(
        self,
        asset_id: str,
        source: FileSource | dict[str, Any],
        destination: FileDestination | dict[str, Any],
    ) -> None:
        self.document.files[asset_id] = FileAsset(
            source=FileSource.model_validate(source),
            destinations={CURRENT_DESTINATION: FileDestination.model_validate(destination)},
        )

    def add_docker_image_asset(
        self,
        asset_id: str,
        source: DockerImageSource | dict[str, Any],
        destination: DockerImageDestination | dict[str, Any],
    ) -> None:
        self.document.docker_images[asset_id] = DockerImageAsset(
            source=DockerImageSource.model_validate(source),
            destinations={CURRENT_DESTINATION: DockerImageDestination.model_validate(destination)},
        )

    @property
    def is_empty(self) -> bool:
        return not self.document.files and not self.document.docker_images

    def to_manifest(self, directory: Path | str) -> AssetManifest:
        """Write the manifest into ``directory`` and return it parsed back."""
        directory = Path(directory)
        manifest_path = directory / MANIFEST_FILE_NAME
        with open(manifest_path, "w", encoding="utf-8") as f:
            json.dump(
                self.document.model_dump(by_alias=True, exclude_none=True), f, indent=2
            )
        return AssetManifest.from_file(manifest_path)
