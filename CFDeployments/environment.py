"""
Environment Access

Resolves the credentials and roles for each kind of stack operation, and
keeps a per-environment cache of bootstrap stack information and
provisioned support resources (ECR repositories, SSM version lookups).
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from botocore.exceptions import ClientError

from .cfn_api import CloudFormationStack
from .errors import BootstrapVersionMismatch, ToolkitError, format_error_message
from .sdk import Sdk, SdkProvider, aws_call
from .stack_artifact import Environment, StackArtifact

logger = logging.getLogger(__name__)

# Bootstrap versions from this one on restrict asset publishing to the bootstrap account
CROSS_ACCOUNT_PUBLISHING_MIN_BOOTSTRAP_VERSION = 21


class ToolkitInfo:
    """
    Information about the bootstrap (toolkit) stack of an environment.
    """

    def __init__(self, stack_name: str, outputs: Optional[Dict[str, str]] = None, found: bool = True):
        self.stack_name = stack_name
        self.outputs = outputs or {}
        self.found = found

    @classmethod
    def bootstrap_stack_not_found(cls, stack_name: str) -> 'ToolkitInfo':
        return cls(stack_name, found=False)

    @classmethod
    async def lookup(cls, sdk: Sdk, stack_name: str) -> 'ToolkitInfo':
        stack = await CloudFormationStack.lookup(sdk.cloudformation(), stack_name)
        if not stack.exists:
            return cls.bootstrap_stack_not_found(stack_name)
        if stack.stack_status.is_creation_failure:
            logger.debug("The %s stack exists but failed to deploy: %s", stack_name, stack.stack_status)
            return cls.bootstrap_stack_not_found(stack_name)
        return cls(stack_name, stack.outputs)

    def _require(self, output: str) -> str:
        if not self.found:
            raise ToolkitError(f"Bootstrap stack {self.stack_name} not found")
        value = self.outputs.get(output)
        if value is None:
            raise ToolkitError(f"The CDK toolkit stack ({self.stack_name}) does not have an output named {output}. Please run 'cdk bootstrap'.")
        return value

    @property
    def bucket_name(self) -> str:
        return self._require('BucketName')

    @property
    def bucket_url(self) -> str:
        return f"https://{self._require('BucketDomainName')}"

    @property
    def repository_name(self) -> str:
        return self._require('ImageRepositoryName')

    @property
    def version(self) -> int:
        if not self.found:
            return 0
        return int(self.outputs.get('BootstrapVersion', '0'))


class EnvironmentCache:
    """Cache contents for one environment"""

    def __init__(self):
        self.toolkit_info: Optional[ToolkitInfo] = None
        self.ssm_versions: Dict[str, int] = {}
        self.ecr_repositories: Dict[str, str] = {}
        self.lock = asyncio.Lock()


class EnvironmentResourcesRegistry:
    """
    Holds one EnvironmentCache per environment for the lifetime of a
    deployments coordinator.
    """

    def __init__(self, toolkit_stack_name: str):
        self.toolkit_stack_name = toolkit_stack_name
        self._caches: Dict[str, EnvironmentCache] = {}

    def for_environment(self, env: Environment, sdk: Sdk, io_helper) -> 'EnvironmentResources':
        key = f"{env.account}:{env.region}"
        if key not in self._caches:
            self._caches[key] = EnvironmentCache()
        return EnvironmentResources(env, sdk, io_helper, self._caches[key], self.toolkit_stack_name)


class EnvironmentResources:
    """
    Support resources of one environment, looked up lazily through the
    given Sdk and remembered in the shared cache.
    """

    def __init__(self, environment: Environment, sdk: Sdk, io_helper, cache: EnvironmentCache, toolkit_stack_name: str):
        self.environment = environment
        self.sdk = sdk
        self.io_helper = io_helper
        self.cache = cache
        self.toolkit_stack_name = toolkit_stack_name

    async def lookup_toolkit(self) -> ToolkitInfo:
        async with self.cache.lock:
            if self.cache.toolkit_info is None:
                self.cache.toolkit_info = await ToolkitInfo.lookup(self.sdk, self.toolkit_stack_name)
            return self.cache.toolkit_info

    async def validate_version(self, requires_version: Optional[int], ssm_parameter: Optional[str]):
        """
        Fail if the bootstrap version of this environment is below what the stack needs.

        Args:
            requires_version: Minimum bootstrap version, None to skip the check
            ssm_parameter: SSM parameter holding the deployed bootstrap version

        Raises:
            BootstrapVersionMismatch: version too old or could not be determined
        """
        if requires_version is None:
            return

        if ssm_parameter:
            try:
                version = await self.version_from_ssm_parameter(ssm_parameter)
            except ToolkitError as e:
                raise BootstrapVersionMismatch(
                    f"This CDK deployment requires bootstrap stack version '{requires_version}', but during the "
                    f"confirmation via SSM parameter {ssm_parameter} the following error occurred: {e}"
                )
        else:
            version = (await self.lookup_toolkit()).version

        if version < requires_version:
            raise BootstrapVersionMismatch(
                f"This CDK deployment requires bootstrap stack version '{requires_version}', "
                f"found '{version}'. Please run 'cdk bootstrap'."
            )

    async def version_from_ssm_parameter(self, parameter_name: str) -> int:
        """Read a bootstrap version number from SSM (memoized per parameter)"""
        if parameter_name in self.cache.ssm_versions:
            return self.cache.ssm_versions[parameter_name]

        try:
            response = await aws_call(self.sdk.ssm().get_parameter, Name=parameter_name)
        except ClientError as e:
            if e.response['Error']['Code'] == 'ParameterNotFound':
                raise ToolkitError(
                    f"SSM parameter {parameter_name} not found. Has the environment been bootstrapped? "
                    f"Please run 'cdk bootstrap' (see https://docs.aws.amazon.com/cdk/latest/guide/bootstrapping.html)"
                )
            raise ToolkitError(format_error_message(e))

        value = response.get('Parameter', {}).get('Value')
        try:
            version = int(value)
        except (TypeError, ValueError):
            raise ToolkitError(f"SSM parameter {parameter_name} not a number: {value}")

        self.cache.ssm_versions[parameter_name] = version
        return version

    async def prepare_ecr_repository(self, repository_name: str) -> Dict[str, str]:
        """
        Make sure an ECR repository exists, creating it if needed.

        Returns:
            {'repositoryUri': ...}
        """
        async with self.cache.lock:
            if repository_name in self.cache.ecr_repositories:
                return {'repositoryUri': self.cache.ecr_repositories[repository_name]}

            ecr = self.sdk.ecr()
            uri = None
            try:
                response = await aws_call(ecr.describe_repositories, repositoryNames=[repository_name])
                repositories = response.get('repositories') or []
                if repositories:
                    uri = repositories[0]['repositoryUri']
            except ClientError as e:
                if e.response['Error']['Code'] != 'RepositoryNotFoundException':
                    raise

            if uri is None:
                await self.io_helper.debug(f"{repository_name}: creating ECR repository")
                response = await aws_call(
                    ecr.create_repository,
                    repositoryName=repository_name,
                    imageScanningConfiguration={'scanOnPush': True},
                )
                uri = response['repository']['repositoryUri']
                if not uri:
                    raise ToolkitError(f"CreateRepository did not return a repository URI for {repository_name}")

            self.cache.ecr_repositories[repository_name] = uri
            return {'repositoryUri': uri}


@dataclass
class TargetEnvironment:
    """What an operation needs to talk to one environment"""
    sdk: Sdk
    resolved_environment: Environment
    resources: EnvironmentResources
    is_fallback_credentials: bool = False

    async def replace_placeholders(self, value: Optional[str]) -> Optional[str]:
        """Fill ${AWS::AccountId}, ${AWS::Region} and ${AWS::Partition} into role ARNs"""
        if value is None:
            return None
        if '${AWS::Partition}' in value:
            partition = (await self.sdk.current_account())['partition']
            value = value.replace('${AWS::Partition}', partition)
        return value \
            .replace('${AWS::AccountId}', self.resolved_environment.account) \
            .replace('${AWS::Region}', self.resolved_environment.region)


class EnvironmentAccess:
    """
    Access to the environments of stacks, one method per kind of operation.
    """

    def __init__(self, sdk_provider: SdkProvider, toolkit_stack_name: str, io_helper):
        self.sdk_provider = sdk_provider
        self.toolkit_stack_name = toolkit_stack_name
        self.io_helper = io_helper
        self.registry = EnvironmentResourcesRegistry(toolkit_stack_name)

    async def resolve_stack_environment(self, stack: StackArtifact) -> Environment:
        return await self.sdk_provider.resolve_environment(stack.environment)

    async def access_stack_for_read_only_stack_operations(self, stack: StackArtifact) -> TargetEnvironment:
        """Deploy-role credentials for reading (template summaries, asset checks)"""
        return await self._access_stack(stack, 'read')

    async def access_stack_for_mutable_stack_operations(self, stack: StackArtifact) -> TargetEnvironment:
        """Deploy-role credentials for changing the stack"""
        return await self._access_stack(stack, 'write')

    async def access_stack_for_lookup_best_effort(self, stack: StackArtifact) -> TargetEnvironment:
        """
        Lookup-role credentials, falling back to the default credentials with
        a warning when the lookup role can't be assumed.
        """
        if not stack.lookup_role_arn:
            return await self._access_stack(stack, 'read')

        env = await self.resolve_stack_environment(stack)
        try:
            sdk = await self.sdk_provider.for_environment(env, 'read', await self._replace(stack.lookup_role_arn, env))
            return self._target(env, sdk)
        except ToolkitError as e:
            await self.io_helper.warn(
                f"Could not assume {stack.lookup_role_arn}, proceeding anyway. ({format_error_message(e)})"
            )
            sdk = await self.sdk_provider.for_environment(env, 'read')
            return self._target(env, sdk, is_fallback=True)

    async def _access_stack(self, stack: StackArtifact, mode: str) -> TargetEnvironment:
        env = await self.resolve_stack_environment(stack)
        role = await self._replace(stack.assume_role_arn, env)
        sdk = await self.sdk_provider.for_environment(env, mode, role, stack.assume_role_external_id)
        return self._target(env, sdk)

    def _target(self, env: Environment, sdk: Sdk, is_fallback: bool = False) -> TargetEnvironment:
        return TargetEnvironment(
            sdk=sdk,
            resolved_environment=env,
            resources=self.registry.for_environment(env, sdk, self.io_helper),
            is_fallback_credentials=is_fallback,
        )

    async def _replace(self, value: Optional[str], env: Environment) -> Optional[str]:
        if value is None:
            return None
        if '${AWS::Partition}' in value:
            base = await self.sdk_provider.base_credentials_account()
            value = value.replace('${AWS::Partition}', (base or {}).get('partition', 'aws'))
        return value.replace('${AWS::AccountId}', env.account).replace('${AWS::Region}', env.region)


async def determine_allow_cross_account_asset_publishing(sdk: Sdk, io_helper, toolkit_stack_name: str) -> bool:
    """
    Whether assets may be published to buckets/repositories owned by another account.

    Older bootstrap stacks don't pin the asset owner, so cross-account
    publishing is only allowed when there is no bootstrap stack (custom
    synthesizers) or the bootstrap stack is recent enough to protect itself.
    """
    try:
        toolkit = await ToolkitInfo.lookup(sdk, toolkit_stack_name)
        if not toolkit.found:
            return True
        if toolkit.version >= CROSS_ACCOUNT_PUBLISHING_MIN_BOOTSTRAP_VERSION:
            return True
        await io_helper.debug(
            f"Bootstrap stack {toolkit_stack_name} is version {toolkit.version}, "
            f"restricting asset publishing to the current account"
        )
        return False
    except ClientError as e:
        await io_helper.debug(f"Error determining cross account asset publishing: {format_error_message(e)}")
        await io_helper.debug('Defaulting to allowing cross account asset publishing')
        return True
