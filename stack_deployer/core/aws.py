"""AWS SDK access for deployments.

Wraps a boto3 session so that every control-plane call can be awaited. boto3
clients are blocking, so calls are moved to a worker thread.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import ClientError

from ..constants import UNKNOWN_ACCOUNT, UNKNOWN_REGION
from ..models.artifacts import Environment
from .logging_config import get_deploy_logger

logger = get_deploy_logger()


async def aws_call(method: Callable[..., Any], **kwargs: Any) -> Any:
    """Invoke a boto3 client method without blocking the event loop."""
    return await asyncio.to_thread(method, **kwargs)


def drop_none(request: dict[str, Any]) -> dict[str, Any]:
    """Remove unset fields; botocore rejects explicit ``None`` values."""
    return {key: value for key, value in request.items() if value is not None}


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "")


@dataclass
class Account:
    """The account behind a set of credentials."""

    account_id: str
    partition: str


class Sdk:
    """Clients for a single environment and set of credentials."""

    def __init__(self, session: boto3.Session, region: str):
        self.session = session
        self.region = region
        self._clients: dict[str, Any] = {}
        self._account: Account | None = None

    def _client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    def cloudformation(self) -> Any:
        return self._client("cloudformation")

    def s3(self) -> Any:
        return self._client("s3")

    def ecr(self) -> Any:
        return self._client("ecr")

    def ssm(self) -> Any:
        return self._client("ssm")

    async def current_account(self) -> Account:
        if self._account is None:
            identity = await aws_call(self._client("sts").get_caller_identity)
            arn = identity["Arn"]
            self._account = Account(account_id=identity["Account"], partition=arn.split(":")[1])
        return self._account


class SdkProvider:
    """Creates SDKs for target environments from a base boto3 session."""

    def __init__(self, profile_name: str | None = None, region_name: str | None = None):
        self.session = boto3.Session(profile_name=profile_name, region_name=region_name)
        self.logger = get_deploy_logger().bind(component="sdk_provider")

    @property
    def default_region(self) -> str:
        return self.session.region_name or "us-east-1"

    async def resolve_environment(self, environment: Environment) -> Environment:
        """Replace unknown account/region markers with the current credentials' values."""
        if environment.is_resolved:
            return environment

        region = environment.region
        if region == UNKNOWN_REGION:
            region = self.default_region

        account = environment.account
        if account == UNKNOWN_ACCOUNT:
            account = (await Sdk(self.session, region).current_account()).account_id

        return Environment(account=account, region=region)

    async def for_environment(
        self,
        environment: Environment,
        assume_role_arn: str | None = None,
        assume_role_external_id: str | None = None,
    ) -> Sdk:
        """Get an SDK for the given environment, assuming a role if one is given."""
        if not assume_role_arn:
            return Sdk(self.session, environment.region)

        self.logger.debug(
            "Assuming role", role_arn=assume_role_arn, environment=environment.name
        )
        sts = self.session.client("sts", region_name=environment.region)
        response = await aws_call(
            sts.assume_role,
            **drop_none(
                {
                    "RoleArn": assume_role_arn,
                    "RoleSessionName": f"stack-deployer-{environment.account}",
                    "ExternalId": assume_role_external_id,
                }
            ),
        )
        credentials = response["Credentials"]
        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=environment.region,
        )
        return Sdk(session, environment.region)

    async def base_credentials_partition(self, environment: Environment) -> str | None:
        try:
            return (await Sdk(self.session, environment.region).current_account()).partition
        except ClientError as e:
            self.logger.debug(
                "Could not determine partition from base credentials", error=str(e)
            )
            return None
