"""
boto3 session handling.

SdkProvider hands out an Sdk per target environment, assuming the
environment's deployment role when one is configured.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from .account_cache import AccountAccessKeyCache
from .errors import ToolkitError
from .stack_artifact import UNKNOWN_ACCOUNT, UNKNOWN_REGION, Environment

logger = logging.getLogger(__name__)


async def aws_call(fn: Callable, **kwargs) -> Any:
    """
    Run a blocking boto3 call without blocking the event loop.

    Args:
        fn: Bound client method, e.g. cfn.describe_stacks
        **kwargs: API parameters

    Returns:
        The API response
    """
    return await asyncio.to_thread(functools.partial(fn, **kwargs))


class Sdk:
    """
    Clients for one set of credentials in one region.
    Clients are created on first use and reused afterwards.
    """

    def __init__(self, session: boto3.session.Session, region: str):
        self.session = session
        self.region = region
        self._clients: Dict[str, Any] = {}
        self._account: Optional[Dict[str, str]] = None

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    def cloudformation(self):
        return self._client('cloudformation')

    def s3(self):
        return self._client('s3')

    def ecr(self):
        return self._client('ecr')

    def ssm(self):
        return self._client('ssm')

    def sts(self):
        return self._client('sts')

    def lambda_client(self):
        return self._client('lambda')

    async def current_account(self) -> Dict[str, str]:
        """
        Account and partition of the credentials behind this Sdk.

        Returns:
            {'accountId': '123456789012', 'partition': 'aws'}
        """
        if self._account is None:
            identity = await aws_call(self.sts().get_caller_identity)
            self._account = {
                'accountId': identity['Account'],
                'partition': identity['Arn'].split(':')[1],
            }
        return self._account


class SdkProvider:
    """
    Creates Sdk objects for target environments.

    Args:
        session: Base boto3 session (default credential chain when omitted)
        default_region: Region used when a stack does not pin one
        account_cache: Disk cache of access key -> account
    """

    def __init__(
        self,
        session: Optional[boto3.session.Session] = None,
        default_region: str = 'us-east-1',
        account_cache: Optional[AccountAccessKeyCache] = None,
    ):
        self.session = session or boto3.session.Session()
        self.default_region = self.session.region_name or default_region
        self.account_cache = account_cache
        self._base_sdk = Sdk(self.session, self.default_region)

    async def base_credentials_account(self) -> Optional[Dict[str, str]]:
        """
        Account of the default credentials, or None if there are none.
        """
        credentials = self.session.get_credentials()
        if credentials is None:
            return None

        async def resolve():
            try:
                return await self._base_sdk.current_account()
            except (ClientError, NoCredentialsError) as e:
                logger.debug("Unable to determine the default AWS account: %s", e)
                return None

        if self.account_cache is None:
            return await resolve()
        return await self.account_cache.fetch(credentials.access_key, resolve)

    async def resolve_environment(self, env: Environment) -> Environment:
        """Replace unknown account/region placeholders with the defaults"""
        if env.is_resolved:
            return env

        region = self.default_region if env.region == UNKNOWN_REGION else env.region
        account = env.account
        if account == UNKNOWN_ACCOUNT:
            base = await self.base_credentials_account()
            if not base:
                raise ToolkitError(
                    "Unable to resolve AWS account to use. It must be either configured when "
                    "you define your CDK Stack, or through the environment"
                )
            account = base['accountId']
        return Environment(account=account, region=region)

    async def for_environment(
        self,
        env: Environment,
        mode: str = 'read',
        assume_role_arn: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Sdk:
        """
        Sdk for an environment, optionally under an assumed role.

        Args:
            env: Resolved environment
            mode: 'read' or 'write' (used for the role session name)
            assume_role_arn: Role to assume before making calls
            external_id: External ID for the role assumption

        Returns:
            Sdk bound to the environment's region
        """
        if not assume_role_arn:
            return Sdk(self.session, env.region)

        params = {
            'RoleArn': assume_role_arn,
            'RoleSessionName': f"cfn-deployments-{mode}",
        }
        if external_id:
            params['ExternalId'] = external_id

        try:
            response = await aws_call(self.session.client('sts', region_name=env.region).assume_role, **params)
        except ClientError as e:
            raise ToolkitError(f"Could not assume role {assume_role_arn}: {e.response['Error']['Message']}")

        creds = response['Credentials']
        session = boto3.session.Session(
            aws_access_key_id=creds['AccessKeyId'],
            aws_secret_access_key=creds['SecretAccessKey'],
            aws_session_token=creds['SessionToken'],
            region_name=env.region,
        )
        return Sdk(session, env.region)
