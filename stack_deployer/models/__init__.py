"""Data models for stack deployments."""

from .artifacts import (  # noqa: F401
    AssetManifestArtifact,
    AssetMetadata,
    ContainerImageAssetMetadata,
    Environment,
    FileAssetMetadata,
    StackArtifact,
)
from .deployment import (  # noqa: F401
    ChangeSetDescriptor,
    DeploymentResult,
    DeployStackOptions,
    DestroyStackOptions,
    StackSnapshot,
    StackStatus,
    Tag,
)

__all__ = [
    # Artifact models
    "Environment",
    "FileAssetMetadata",
    "ContainerImageAssetMetadata",
    "AssetMetadata",
    "AssetManifestArtifact",
    "StackArtifact",
    # Deployment models
    "Tag",
    "StackStatus",
    "StackSnapshot",
    "ChangeSetDescriptor",
    "DeploymentResult",
    "DeployStackOptions",
    "DestroyStackOptions",
]
