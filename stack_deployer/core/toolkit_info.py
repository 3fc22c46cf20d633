"""Information about the bootstrap (staging) resources of an environment."""

from typing import Any

from botocore.exceptions import ClientError
from pydantic import BaseModel

from ..constants import (
    ASSET_REPOSITORY_TAG,
    BOOTSTRAP_VERSION_OUTPUT,
    PARAMETER_NOT_FOUND_CODE,
    REPOSITORY_NOT_FOUND_CODE,
    SSM_BUCKET_DOMAIN_NAME,
    SSM_BUCKET_NAME,
    SSM_VERSION,
)
from ..models.artifacts import Environment
from ..models.deployment import StackSnapshot
from .aws import Sdk, aws_call, error_code
from .cloudformation import stabilize_stack
from .logging_config import get_deploy_logger
from .settings import deploy_settings

logger = get_deploy_logger()


class StagingEnvironmentInfo(BaseModel):
    """Resolved staging resources of one environment and qualifier."""

    bucket_name: str
    bucket_domain_name: str
    qualifier: str
    version: int

    @property
    def bucket_url(self) -> str:
        return f"https://{self.bucket_domain_name}"


async def _get_ssm_parameter_value(sdk: Sdk, name: str) -> str | None:
    try:
        response = await aws_call(sdk.ssm().get_parameter, Name=name)
    except ClientError as e:
        if error_code(e) == PARAMETER_NOT_FOUND_CODE:
            return None
        raise
    return response.get("Parameter", {}).get("Value")


class ToolkitResourcesInfo:
    """Staging resources plus the SDK needed to prepare them for publishing."""

    def __init__(self, sdk: Sdk, info: StagingEnvironmentInfo):
        self.sdk = sdk
        self.info = info

    @property
    def bucket_name(self) -> str:
        return self.info.bucket_name

    @property
    def bucket_url(self) -> str:
        return self.info.bucket_url

    @property
    def version(self) -> int:
        return self.info.version

    @classmethod
    async def lookup(
        cls, environment: Environment, sdk: Sdk, qualifier: str | None = None
    ) -> "ToolkitResourcesInfo | None":
        """Read the staging resources from the SSM parameters the bootstrap stack publishes.

        Returns ``None`` if any parameter is absent or the version is not positive.
        """
        qualifier = qualifier or deploy_settings.bootstrap_qualifier
        bucket_name = await _get_ssm_parameter_value(
            sdk, SSM_BUCKET_NAME.format(qualifier=qualifier)
        )
        bucket_domain_name = await _get_ssm_parameter_value(
            sdk, SSM_BUCKET_DOMAIN_NAME.format(qualifier=qualifier)
        )
        raw_version = await _get_ssm_parameter_value(sdk, SSM_VERSION.format(qualifier=qualifier))
        try:
            version = int(raw_version or "0")
        except ValueError:
            version = 0

        if bucket_name is None or bucket_domain_name is None or version <= 0:
            logger.debug(
                "Environment is not bootstrapped",
                environment=environment.name,
                qualifier=qualifier,
                remediation=f'{deploy_settings.bootstrap_command} "{environment.name}"',
            )
            return None

        return cls(
            sdk,
            StagingEnvironmentInfo(
                bucket_name=bucket_name,
                bucket_domain_name=bucket_domain_name,
                qualifier=qualifier,
                version=version,
            ),
        )

    async def prepare_ecr_repository(self, repository_name: str) -> str:
        """Make sure an ECR repository exists and return its URI.

        Existing repositories are reused; new ones are tagged as asset
        repositories and get image scanning on push.
        """
        ecr = self.sdk.ecr()
        try:
            logger.debug("Checking if ECR repository exists", repository=repository_name)
            response = await aws_call(ecr.describe_repositories, repositoryNames=[repository_name])
            repositories = response.get("repositories") or []
            if repositories and repositories[0].get("repositoryUri"):
                return repositories[0]["repositoryUri"]
        except ClientError as e:
            if error_code(e) != REPOSITORY_NOT_FOUND_CODE:
                raise

        logger.debug("Creating ECR repository", repository=repository_name)
        response = await aws_call(
            ecr.create_repository, repositoryName=repository_name, tags=[ASSET_REPOSITORY_TAG]
        )
        repository_uri = (response.get("repository") or {}).get("repositoryUri")
        if not repository_uri:
            raise RuntimeError(
                f"CreateRepository did not return a repository URI for {repository_name}"
            )

        logger.debug("Enabling image scanning", repository=repository_name)
        await aws_call(
            ecr.put_image_scanning_configuration,
            repositoryName=repository_name,
            imageScanningConfiguration={"scanOnPush": True},
        )
        return repository_uri


class ToolkitStackInfo:
    """The bootstrap stack itself, read through CloudFormation."""

    def __init__(self, stack: StackSnapshot):
        self.stack = stack

    @classmethod
    async def lookup(
        cls, environment: Environment, sdk: Sdk, stack_name: str | None = None
    ) -> "ToolkitStackInfo | None":
        stack_name = stack_name or deploy_settings.toolkit_stack_name
        stack = await stabilize_stack(sdk.cloudformation(), stack_name)
        if not stack.exists:
            logger.debug(
                "Environment has no toolkit stack",
                environment=environment.name,
                stack_name=stack_name,
            )
            return None
        if stack.status.is_creation_failure:
            # A bootstrap stack that failed to create is as good as absent
            logger.debug(
                "Toolkit stack failed to create",
                environment=environment.name,
                stack_name=stack_name,
                status=str(stack.status),
            )
            return None
        return cls(stack)

    @property
    def version(self) -> int:
        try:
            return int(self.stack.outputs.get(BOOTSTRAP_VERSION_OUTPUT, "0"))
        except ValueError:
            return 0

    @property
    def parameters(self) -> dict[str, str]:
        return self.stack.parameters


class ToolkitInfoCache:
    """Memoizes staging lookups per (environment, qualifier).

    Only successful lookups are kept, so an environment bootstrapped during
    the lifetime of the cache is picked up on the next lookup.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], ToolkitResourcesInfo] = {}

    @staticmethod
    def _key(environment: Environment, qualifier: str | None) -> tuple[str, str]:
        return environment.name, qualifier or deploy_settings.bootstrap_qualifier

    async def lookup(
        self, environment: Environment, sdk: Sdk, qualifier: str | None = None
    ) -> ToolkitResourcesInfo | None:
        key = self._key(environment, qualifier)
        if key in self._entries:
            return self._entries[key]

        info = await ToolkitResourcesInfo.lookup(environment, sdk, key[1])
        if info is not None:
            self._entries[key] = info
        return info

    def invalidate(self, environment: Environment, qualifier: str | None = None) -> None:
        self._entries.pop(self._key(environment, qualifier), None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, item: Any) -> bool:
        environment, qualifier = item
        return self._key(environment, qualifier) in self._entries
