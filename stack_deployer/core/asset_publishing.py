"""Publication of asset manifest entries to S3 buckets and ECR repositories."""

import asyncio
import base64
import mimetypes
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Any

import docker
from botocore.exceptions import ClientError
from docker.errors import ImageNotFound

from ..constants import IMAGE_NOT_FOUND_CODE, REPOSITORY_NOT_FOUND_CODE
from ..models.artifacts import Environment
from ..utils import format_size, replace_placeholders_in
from .asset_manifest import (
    AssetManifest,
    DockerImageManifestEntry,
    FileManifestEntry,
    ManifestEntry,
)
from .aws import Sdk, SdkProvider, aws_call, error_code
from .exceptions import AssetPublishingError, ConfigurationError
from .logging_config import get_asset_logger

# Progress event type -> log method name
EVENT_LOG_LEVELS = {
    "start": "info",
    "success": "info",
    "fail": "error",
    "build": "debug",
    "cached": "debug",
    "check": "debug",
    "found": "debug",
    "upload": "debug",
    "debug": "debug",
}

ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


def zip_directory(directory: Path, output_file: Path) -> None:
    """Zip a directory with stable entry order and timestamps.

    Identical directory contents always produce an identical archive.
    """
    with zipfile.ZipFile(output_file, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for root, dirs, files in os.walk(directory):
            dirs.sort()
            for name in sorted(files):
                full_path = Path(root) / name
                arcname = full_path.relative_to(directory).as_posix()
                info = zipfile.ZipInfo(arcname, date_time=ZIP_TIMESTAMP)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = (full_path.stat().st_mode & 0o777) << 16
                archive.writestr(info, full_path.read_bytes())


class DockerImageBuilder:
    """Thin async wrapper around the Docker SDK for build, tag and push."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client
        self.logger = get_asset_logger().bind(component="docker_image_builder")

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def login(self, sdk: Sdk) -> dict[str, str]:
        """Log in to the ECR registry of ``sdk`` and return the auth config."""
        response = await aws_call(sdk.ecr().get_authorization_token)
        authorization = (response.get("authorizationData") or [{}])[0]
        token = authorization.get("authorizationToken")
        endpoint = authorization.get("proxyEndpoint")
        if not token or not endpoint:
            raise AssetPublishingError("No ECR authorization token returned")

        username, password = base64.b64decode(token).decode("utf-8").split(":", 1)
        await asyncio.to_thread(
            self.client.login, username=username, password=password, registry=endpoint, reauth=True
        )
        return {"username": username, "password": password}

    async def exists(self, tag: str) -> bool:
        try:
            await asyncio.to_thread(self.client.images.get, tag)
        except ImageNotFound:
            return False
        return True

    async def build(
        self,
        directory: Path,
        tag: str,
        build_args: dict[str, str] | None = None,
        target: str | None = None,
        dockerfile: str | None = None,
    ) -> None:
        self.logger.debug("Building image", directory=str(directory), tag=tag, target=target)
        await asyncio.to_thread(
            self.client.images.build,
            path=str(directory),
            tag=tag,
            buildargs=build_args or {},
            target=target,
            dockerfile=dockerfile,
            rm=True,
        )

    async def tag(self, source_tag: str, repository: str, tag: str) -> None:
        image = await asyncio.to_thread(self.client.images.get, source_tag)
        await asyncio.to_thread(image.tag, repository, tag=tag)

    async def push(self, repository: str, tag: str, auth_config: dict[str, str]) -> None:
        self.logger.debug("Pushing image", repository=repository, tag=tag)

        def _push() -> None:
            for line in self.client.images.push(
                repository, tag=tag, auth_config=auth_config, stream=True, decode=True
            ):
                # Push failures arrive in the stream, not as exceptions
                if isinstance(line, dict) and line.get("error"):
                    raise AssetPublishingError(
                        f"Failed to push {repository}:{tag}: {line['error']}"
                    )

        await asyncio.to_thread(_push)


class AssetPublisher:
    """Publishes every entry of a manifest, collecting failures.

    One failed entry does not stop the others; all failures are reported
    together once every entry has been attempted.
    """

    def __init__(
        self,
        manifest: AssetManifest,
        sdk_provider: SdkProvider,
        environment: Environment,
        docker_builder: DockerImageBuilder | None = None,
    ):
        self.manifest = manifest
        self.sdk_provider = sdk_provider
        self.environment = environment
        self.docker = docker_builder or DockerImageBuilder()
        self.logger = get_asset_logger().bind(component="asset_publisher")
        self.failures: list[tuple[ManifestEntry, Exception]] = []
        self._completed = 0
        self._total = 0
        self._partition: str | None = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def _emit(self, event_type: str, message: str, **kwargs: Any) -> None:
        percent = int(self._completed / self._total * 100) if self._total else 100
        log = getattr(self.logger, EVENT_LOG_LEVELS.get(event_type, "debug"))
        log(f"[{percent}%] {event_type}: {message}", event_type=event_type, **kwargs)

    async def publish(self) -> None:
        entries = self.manifest.entries
        self._total = len(entries)
        self._completed = 0
        for entry in entries:
            self._emit("start", f"Publishing {entry.display_name}", asset_id=entry.asset_id)
            try:
                await self._publish_entry(entry)
            except Exception as e:
                self.failures.append((entry, e))
                self._completed += 1
                self._emit("fail", f"{entry.display_name}: {e}", asset_id=entry.asset_id)
                continue
            self._completed += 1
            self._emit("success", f"Published {entry.display_name}", asset_id=entry.asset_id)

    async def _placeholders(self) -> dict[str, str]:
        if self._partition is None:
            self._partition = (
                await self.sdk_provider.base_credentials_partition(self.environment) or "aws"
            )
        return {
            "account": self.environment.account,
            "region": self.environment.region,
            "partition": self._partition,
        }

    async def _sdk_for(self, destination: Any) -> Sdk:
        region = destination.region or self.environment.region
        return await self.sdk_provider.for_environment(
            Environment(account=self.environment.account, region=region),
            destination.assume_role_arn,
            destination.assume_role_external_id,
        )

    async def _publish_entry(self, entry: ManifestEntry) -> None:
        replacements = await self._placeholders()
        destination = type(entry.destination).model_validate(
            replace_placeholders_in(entry.destination.model_dump(), **replacements)
        )
        match entry:
            case FileManifestEntry():
                await self._publish_file(entry, destination)
            case DockerImageManifestEntry():
                await self._publish_image(entry, destination)

    async def _publish_file(self, entry: FileManifestEntry, destination: Any) -> None:
        sdk = await self._sdk_for(destination)
        s3 = sdk.s3()
        s3_url = f"s3://{destination.bucket_name}/{destination.object_key}"

        self._emit("check", f"Check {s3_url}")
        if await self._object_exists(s3, destination.bucket_name, destination.object_key):
            self._emit("found", f"Found {s3_url}")
            return

        source_path = (self.manifest.directory / entry.source.path).resolve()
        if entry.source.packaging == "zip":
            with tempfile.TemporaryDirectory() as tmp_dir:
                archive = Path(tmp_dir) / f"{entry.asset_id}.zip"
                zip_directory(source_path, archive)
                await self._upload(s3, archive, destination, s3_url, "application/zip")
        else:
            content_type = mimetypes.guess_type(source_path.name)[0] or "application/octet-stream"
            await self._upload(s3, source_path, destination, s3_url, content_type)

    async def _upload(
        self, s3: Any, file_path: Path, destination: Any, s3_url: str, content_type: str
    ) -> None:
        self._emit("upload", f"Upload {s3_url}", size=format_size(file_path.stat().st_size))
        await aws_call(
            s3.upload_file,
            Filename=str(file_path),
            Bucket=destination.bucket_name,
            Key=destination.object_key,
            ExtraArgs={"ContentType": content_type},
        )

    @staticmethod
    async def _object_exists(s3: Any, bucket: str, key: str) -> bool:
        response = await aws_call(s3.list_objects_v2, Bucket=bucket, Prefix=key, MaxKeys=1)
        return any(obj.get("Key") == key for obj in response.get("Contents") or [])

    async def _publish_image(self, entry: DockerImageManifestEntry, destination: Any) -> None:
        sdk = await self._sdk_for(destination)
        ecr = sdk.ecr()

        repository_uri = await self._repository_uri(ecr, destination.repository_name)
        if not repository_uri:
            raise AssetPublishingError(
                f"No ECR repository named '{destination.repository_name}' in account "
                f"{self.environment.account}. Is this account bootstrapped?"
            )

        image_uri = f"{repository_uri}:{destination.image_tag}"
        self._emit("check", f"Check {image_uri}")
        if await self._image_exists(ecr, destination.repository_name, destination.image_tag):
            self._emit("found", f"Found {image_uri}")
            return

        # The Dockerfile may pull base images from the same registry
        auth_config = await self.docker.login(sdk)

        local_tag = f"cdkasset-{entry.asset_id.lower()}"
        if await self.docker.exists(local_tag):
            self._emit("cached", f"Cached {local_tag}")
        else:
            directory = (self.manifest.directory / entry.source.directory).resolve()
            self._emit("build", f"Building Docker image at {directory}")
            await self.docker.build(
                directory,
                local_tag,
                build_args=entry.source.docker_build_args,
                target=entry.source.docker_build_target,
                dockerfile=entry.source.docker_file,
            )

        self._emit("upload", f"Push {image_uri}")
        await self.docker.tag(local_tag, repository_uri, destination.image_tag)
        await self.docker.push(repository_uri, destination.image_tag, auth_config)

    @staticmethod
    async def _repository_uri(ecr: Any, repository_name: str) -> str | None:
        try:
            response = await aws_call(ecr.describe_repositories, repositoryNames=[repository_name])
        except ClientError as e:
            if error_code(e) != REPOSITORY_NOT_FOUND_CODE:
                raise
            return None
        repositories = response.get("repositories") or []
        return repositories[0].get("repositoryUri") if repositories else None

    @staticmethod
    async def _image_exists(ecr: Any, repository_name: str, image_tag: str) -> bool:
        try:
            await aws_call(
                ecr.describe_images,
                repositoryName=repository_name,
                imageIds=[{"imageTag": image_tag}],
            )
        except ClientError as e:
            if error_code(e) != IMAGE_NOT_FOUND_CODE:
                raise
            return False
        return True


async def publish_assets(
    manifest: AssetManifest,
    sdk_provider: SdkProvider,
    environment: Environment,
    docker_builder: DockerImageBuilder | None = None,
) -> None:
    """Publish every asset in ``manifest`` to ``environment``.

    Raises:
        ConfigurationError: the environment still has unknown account or region
        AssetPublishingError: at least one asset failed to publish
    """
    if not environment.is_resolved:
        raise ConfigurationError(
            "Asset publishing requires resolved account and region, "
            f"got {environment.model_dump_json()}"
        )

    publisher = AssetPublisher(manifest, sdk_provider, environment, docker_builder)
    await publisher.publish()
    if publisher.has_failures:
        failed = ", ".join(entry.display_name for entry, _ in publisher.failures)
        raise AssetPublishingError(
            "Failed to publish one or more assets. See the error messages above for more "
            f"information. Failed: {failed}"
        )


__all__ = [
    "AssetPublisher",
    "DockerImageBuilder",
    "publish_assets",
    "zip_directory",
]
