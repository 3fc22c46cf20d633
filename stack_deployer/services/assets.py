"""
Asset Publication Coordination

Turns the assets recorded in a stack's template metadata into asset manifest
entries and the template parameters that point the stack at them.
"""

import os
from typing import assert_never

from ..constants import (
    ASSET_OBJECT_PREFIX,
    ASSET_PREFIX_SEPARATOR,
    ASSET_REPOSITORY_PREFIX,
)
from ..core.asset_manifest import AssetManifestBuilder
from ..core.exceptions import InvalidAssetConfiguration, StagingEnvironmentRequired
from ..core.logging_config import get_asset_logger
from ..core.settings import deploy_settings
from ..core.toolkit_info import ToolkitResourcesInfo
from ..models.artifacts import (
    AssetMetadata,
    ContainerImageAssetMetadata,
    FileAssetMetadata,
    StackArtifact,
)

logger = get_asset_logger()


def file_asset_object_key(asset: FileAssetMetadata) -> tuple[str, str]:
    """Return the ``(prefix, base name)`` an asset is stored under.

    ``assets/<hash>.zip`` is used instead of ``assets/<hash>/<hash>.zip`` when the
    id is the source hash.
    """
    extension = ".zip" if asset.packaging == "zip" else os.path.splitext(asset.path)[1]
    base_name = f"{asset.source_hash}{extension}"
    prefix = (
        ASSET_OBJECT_PREFIX
        if asset.id == asset.source_hash
        else f"{ASSET_OBJECT_PREFIX}{asset.id}/"
    )
    return prefix, base_name


def default_repository_name(asset_id: str) -> str:
    return ASSET_REPOSITORY_PREFIX + asset_id.replace(":", "-").replace("/", "-").lower()


async def add_metadata_assets_to_manifest(
    stack: StackArtifact,
    builder: AssetManifestBuilder,
    toolkit_info: ToolkitResourcesInfo | None,
    reuse: list[str] | None = None,
) -> dict[str, str]:
    """Add the stack's metadata assets to ``builder``.

    Args:
        stack: Stack whose assets to prepare
        builder: Manifest to add one entry per prepared asset to
        toolkit_info: Staging resources of the target environment
        reuse: Asset ids to leave out entirely (exact match)

    Returns:
        Template parameter values locating the prepared assets
    """
    reuse = reuse or []
    if not stack.assets:
        return {}

    if toolkit_info is None:
        remediation = f"{deploy_settings.bootstrap_command} {stack.environment.name}"
        raise StagingEnvironmentRequired(
            f"{stack.display_name}: This stack uses assets, so the toolkit stack must be "
            f'deployed to the environment (Run "{remediation}")',
            stack_name=stack.stack_name,
            remediation=remediation,
        )

    params: dict[str, str] = {}
    for asset in stack.assets:
        if asset.id in reuse:
            logger.debug("Reusing asset", asset_id=asset.id, stack_name=stack.stack_name)
            continue
        logger.debug(
            "Preparing asset", asset_id=asset.id, packaging=asset.packaging, path=asset.path
        )
        params.update(await prepare_asset(asset, builder, toolkit_info))
    return params


async def prepare_asset(
    asset: AssetMetadata, builder: AssetManifestBuilder, toolkit_info: ToolkitResourcesInfo
) -> dict[str, str]:
    match asset:
        case FileAssetMetadata():
            return prepare_file_asset(asset, builder, toolkit_info)
        case ContainerImageAssetMetadata():
            return await prepare_docker_image_asset(asset, builder, toolkit_info)
        case _:
            assert_never(asset)


def prepare_file_asset(
    asset: FileAssetMetadata, builder: AssetManifestBuilder, toolkit_info: ToolkitResourcesInfo
) -> dict[str, str]:
    prefix, base_name = file_asset_object_key(asset)
    key = f"{prefix}{base_name}"
    logger.debug(
        "Storing asset",
        asset_id=asset.id,
        path=asset.path,
        s3_url=f"s3://{toolkit_info.bucket_name}/{key}",
    )

    builder.add_file_asset(
        asset.source_hash,
        {"path": asset.path, "packaging": asset.packaging},
        {"bucket_name": toolkit_info.bucket_name, "object_key": key},
    )
    return {
        asset.s3_bucket_parameter: toolkit_info.bucket_name,
        asset.s3_key_parameter: f"{prefix}{ASSET_PREFIX_SEPARATOR}{base_name}",
        asset.artifact_hash_parameter: asset.source_hash,
    }


async def prepare_docker_image_asset(
    asset: ContainerImageAssetMetadata,
    builder: AssetManifestBuilder,
    toolkit_info: ToolkitResourcesInfo,
) -> dict[str, str]:
    # Without an output parameter the image goes to a shared, pre-declared repository
    if not asset.image_name_parameter and (not asset.repository_name or not asset.image_tag):
        raise InvalidAssetConfiguration(
            'Invalid Docker image asset configuration: "repositoryName" and "imageTag" are '
            f'required when "imageNameParameter" is left out (asset {asset.id})'
        )

    repository_name = asset.repository_name or default_repository_name(asset.id)
    repository_uri = await toolkit_info.prepare_ecr_repository(repository_name)
    image_tag = asset.image_tag or asset.source_hash

    builder.add_docker_image_asset(
        asset.source_hash,
        {
            "directory": asset.path,
            "docker_build_args": asset.build_args,
            "docker_build_target": asset.target,
            "docker_file": asset.file,
        },
        {"repository_name": repository_name, "image_tag": image_tag},
    )

    if not asset.image_name_parameter:
        return {}
    return {asset.image_name_parameter: f"{repository_uri}:{image_tag}"}
