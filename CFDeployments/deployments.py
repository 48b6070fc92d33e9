"""
Deployments Coordinator

Entry point for stack operations. Resolves environment access for each
operation, validates options before touching the stack, and drives the
deploy, rollback, destroy and asset operations.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from .assetPublishing import AssetManifest, AssetManifestBuilder, AssetProgressListener, AssetPublishing
from .aws_deployer import DeploymentMethod, DeployStackParams, deploy_stack, destroy_stack, stack_tags, suffix_with_errors
from .cfn_api import (
    CloudFormationStack,
    load_current_template,
    make_body_parameter,
    stabilize_stack,
)
from .config import DeploymentSettings
from .deploymentModal.activity_monitor import StackActivityMonitor
from .deploymentModal.event_tracker import StackEventPoller
from .deployment_result import (
    DeployStackResult,
    NeedRollbackFirstDeployStackResult,
    ReplacementRequiresRollbackStackResult,
    RollbackStackResult,
    SuccessfulDeployStackResult,
)
from .environment import EnvironmentAccess, TargetEnvironment, determine_allow_cross_account_asset_publishing
from .errors import InvalidConfiguration, RollbackNoProgress, ToolkitError, format_error_message
from .hotswap import HotswapMode
from .io_host import IO, IoHelper
from .sdk import SdkProvider, aws_call
from .stack_artifact import Environment, StackArtifact
from .stack_status import RollbackChoice

logger = logging.getLogger(__name__)

# Rollback with RetainExceptOnCreate needs this bootstrap version
BOOTSTRAP_STACK_VERSION_FOR_ROLLBACK = 23

# Passed to build_single_asset when the caller already validated the bootstrap version
NO_VERSION_VALIDATION = 'no-version-validation'


@dataclass
class DeployStackOptions:
    """
    Options of a single stack deployment.

    change_set_name and execute are the older way of selecting a change-set
    deployment; they cannot be combined with deployment_method.
    """
    stack: StackArtifact
    deploy_name: Optional[str] = None
    role_arn: Optional[str] = None
    notification_arns: Optional[List[str]] = None
    reuse_assets: Optional[List[str]] = None
    tags: Optional[List[Dict[str, str]]] = None
    deployment_method: Optional[DeploymentMethod] = None
    change_set_name: Optional[str] = None
    execute: Optional[bool] = None
    force_deployment: bool = False
    parameters: Dict[str, Optional[str]] = field(default_factory=dict)
    use_previous_parameters: bool = True
    rollback: bool = True
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    resources_to_import: Optional[List[Dict[str, Any]]] = None
    override_template: Optional[Dict] = None
    asset_parallelism: Optional[bool] = None


@dataclass
class RollbackStackOptions:
    """
    Options of a stack rollback.

    Attributes:
        orphan_failed_resources: Skip every resource that fails to roll back (--force)
        orphan_logical_ids: Resources to skip when continuing a rollback (--orphan)
        validate_bootstrap_stack_version: Check the bootstrap stack supports rollbacks
    """
    stack: StackArtifact
    role_arn: Optional[str] = None
    orphan_failed_resources: bool = False
    orphan_logical_ids: Optional[List[str]] = None
    validate_bootstrap_stack_version: bool = True


@dataclass
class DestroyStackOptions:
    stack: StackArtifact
    deploy_name: Optional[str] = None
    role_arn: Optional[str] = None


@dataclass
class StackExistsOptions:
    stack: StackArtifact
    deploy_name: Optional[str] = None
    try_lookup_role: bool = False


class Deployments:
    """
    Coordinates stack operations for any number of stacks.

    Args:
        sdk_provider: Creates Sdk objects for target environments
        io_helper: IoHelper receiving progress messages and questions
        settings: DeploymentSettings (toolkit stack name, polling, rollback limit)
        sleep: Delay function used by every polling loop
    """

    def __init__(
        self,
        sdk_provider: SdkProvider,
        io_helper: IoHelper,
        settings: Optional[DeploymentSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.sdk_provider = sdk_provider
        self.io_helper = io_helper
        self.settings = settings or DeploymentSettings()
        self.sleep = sleep
        self.env_access = EnvironmentAccess(sdk_provider, self.settings.toolkit_stack_name, io_helper)

        # Keyed by id(manifest); the manifest is kept alongside so its id stays unique
        self.publisher_cache: Dict[int, Any] = {}
        self._publisher_lock = asyncio.Lock()

        self._allow_cross_account_asset_publishing: Optional[bool] = None
        self._cross_account_lock = asyncio.Lock()

    async def resolve_environment(self, stack: StackArtifact) -> Environment:
        return await self.env_access.resolve_stack_environment(stack)

    async def read_current_template(self, stack: StackArtifact) -> Dict:
        await self.io_helper.debug(f"Reading existing template for stack {stack.display_name}.")
        env = await self.env_access.access_stack_for_lookup_best_effort(stack)
        return await load_current_template(stack, env.sdk.cloudformation())

    async def resource_identifier_summaries(self, stack: StackArtifact) -> List[Dict]:
        """
        Identifier properties per resource type of the stack's template, from GetTemplateSummary.

        Returns:
            [{'ResourceType': ..., 'LogicalResourceIds': [...], 'ResourceIdentifiers': [...]}, ...]
        """
        await self.io_helper.debug(f"Retrieving template summary for stack {stack.display_name}.")
        # Only the deploy role has the permissions for GetTemplateSummary
        env = await self.env_access.access_stack_for_read_only_stack_operations(stack)
        cfn = env.sdk.cloudformation()

        # Large templates go through S3
        builder = AssetManifestBuilder()
        cfn_param = await make_body_parameter(self.io_helper, stack, env.resolved_environment, builder, env.resources)
        manifest = builder.to_manifest(stack.assembly_directory)
        if not manifest.is_empty:
            await self.build_and_publish_stack_assets(stack, manifest)

        response = await aws_call(cfn.get_template_summary, **cfn_param)
        return response.get('ResourceIdentifierSummaries') or []

    async def deploy_stack(self, options: DeployStackOptions) -> DeployStackResult:
        """
        Deploy one stack.

        Raises:
            InvalidConfiguration: deployment_method combined with change_set_name/execute
            BootstrapVersionMismatch: the environment's bootstrap stack is too old
        """
        deployment_method = options.deployment_method
        if options.change_set_name is not None or options.execute is not None:
            if deployment_method is not None:
                raise InvalidConfiguration(
                    "You cannot supply both 'deploymentMethod' and 'changeSetName/execute'. Supply one or the other."
                )
            deployment_method = DeploymentMethod.change_set(
                change_set_name=options.change_set_name,
                execute=True if options.execute is None else options.execute,
            )

        env = await self.env_access.access_stack_for_mutable_stack_operations(options.stack)

        # Do a verification of the bootstrap stack version
        await self.validate_bootstrap_stack_version(
            options.stack.stack_name,
            options.stack.requires_bootstrap_stack_version,
            options.stack.bootstrap_stack_version_ssm_parameter,
            env,
        )

        execution_role_arn = await env.replace_placeholders(
            options.role_arn or options.stack.cloudformation_execution_role_arn
        )

        return await deploy_stack(DeployStackParams(
            stack=options.stack,
            resolved_environment=env.resolved_environment,
            sdk=env.sdk,
            sdk_provider=self.sdk_provider,
            env_resources=env.resources,
            deploy_name=options.deploy_name,
            role_arn=execution_role_arn,
            notification_arns=options.stack.notification_arns if options.notification_arns is None else options.notification_arns,
            reuse_assets=options.reuse_assets,
            tags=stack_tags(options.stack.tags) if options.tags is None else options.tags,
            deployment_method=deployment_method,
            force_deployment=options.force_deployment,
            parameters=options.parameters,
            use_previous_parameters=options.use_previous_parameters,
            rollback=options.rollback,
            hotswap=options.hotswap,
            resources_to_import=options.resources_to_import,
            override_template=options.override_template,
            asset_parallelism=self.settings.asset_parallelism if options.asset_parallelism is None else options.asset_parallelism,
            allow_cross_account_asset_publishing=await self.allow_cross_account_asset_publishing(env),
            poll_interval=self.settings.poll_interval,
            sleep=self.sleep,
        ), self.io_helper)

    async def deploy_with_recovery(self, options: DeployStackOptions, force_rollback: bool = False) -> SuccessfulDeployStackResult:
        """
        Deploy, rolling back or re-enabling rollback when the stack demands it.

        Args:
            options: Deployment options
            force_rollback: Roll back without asking, orphaning resources that fail to roll back

        Returns:
            The successful result of the last deploy attempt
        """
        recovered = set()
        while True:
            result = await self.deploy_stack(options)

            if isinstance(result, SuccessfulDeployStackResult):
                return result

            if result.type in recovered:
                raise ToolkitError(f"{options.stack.display_name}: deployment still returned '{result.type}' after recovering from it")
            recovered.add(result.type)

            if isinstance(result, NeedRollbackFirstDeployStackResult):
                if result.reason == 'replacement':
                    question = (f"Stack {options.stack.display_name} is in a paused fail state ({result.status}) "
                                f"and change includes a replacement which cannot be deployed with --no-rollback")
                else:
                    question = (f"Stack {options.stack.display_name} is in a paused fail state ({result.status}) "
                                f"and command line arguments do not include \"--no-rollback\"")
                confirmed = force_rollback or await self.io_helper.request_response(
                    f"{question}. Roll back first and then proceed with deployment?",
                    True,
                    IO.DEPLOY_CONFIRM_ROLLBACK,
                    {'motivation': question, 'stackName': options.stack.stack_name},
                )
                if not confirmed:
                    raise ToolkitError('Aborted by user')

                await self.rollback_stack(RollbackStackOptions(
                    stack=options.stack,
                    role_arn=options.role_arn,
                    orphan_failed_resources=force_rollback,
                    validate_bootstrap_stack_version=False,
                ))
                if result.reason == 'replacement':
                    options = replace(options, rollback=True)
                continue

            if isinstance(result, ReplacementRequiresRollbackStackResult):
                question = f"Stack {options.stack.display_name} contains replacements and cannot be deployed with --no-rollback"
                confirmed = force_rollback or await self.io_helper.request_response(
                    f"{question}. Perform a regular deployment?",
                    True,
                    IO.DEPLOY_CONFIRM_REDEPLOY,
                    {'motivation': question, 'stackName': options.stack.stack_name},
                )
                if not confirmed:
                    raise ToolkitError('Aborted by user')
                options = replace(options, rollback=True)
                continue

            raise ToolkitError(f"Unexpected result type from deploy_stack: {result!r}. If you are seeing this error, please report it.")

    async def rollback_stack(self, options: RollbackStackOptions) -> RollbackStackResult:
        """
        Roll back a stack that is stuck in a failed state.

        Re-reads the stack status on every iteration and acts on it:
        START_ROLLBACK issues a rollback, CONTINUE_UPDATE_ROLLBACK continues
        one (skipping failed resources when orphaning), any other status ends
        the loop with not_in_rollbackable_state.

        Raises:
            InvalidConfiguration: orphan_failed_resources combined with orphan_logical_ids
            RollbackNoProgress: the iteration limit was reached
            ToolkitError: the rollback failed and resources are not being orphaned
        """
        if options.orphan_failed_resources and options.orphan_logical_ids:
            raise InvalidConfiguration('Cannot combine --force with --orphan')

        env = await self.env_access.access_stack_for_mutable_stack_operations(options.stack)

        if options.validate_bootstrap_stack_version:
            await self.validate_bootstrap_stack_version(
                options.stack.stack_name,
                BOOTSTRAP_STACK_VERSION_FOR_ROLLBACK,
                options.stack.bootstrap_stack_version_ssm_parameter,
                env,
            )

        cfn = env.sdk.cloudformation()
        deploy_name = options.stack.stack_name
        execution_role_arn = await env.replace_placeholders(
            options.role_arn or options.stack.cloudformation_execution_role_arn
        )

        resources_to_skip = options.orphan_logical_ids
        for _ in range(self.settings.max_rollback_iterations):
            cloudformation_stack = await CloudFormationStack.lookup(cfn, deploy_name)
            choice = cloudformation_stack.stack_status.rollback_choice

            if choice == RollbackChoice.NONE:
                await self.io_helper.warn(f"Stack {deploy_name} does not need a rollback: {cloudformation_stack.stack_status}")
                return RollbackStackResult(stack_arn=_stack_arn(cloudformation_stack), not_in_rollbackable_state=True)

            if choice == RollbackChoice.ROLLBACK_FAILED:
                await self.io_helper.warn(
                    f"Stack {deploy_name} failed creation and rollback. This state cannot be rolled back. "
                    f"You can recreate this stack by running 'cdk deploy'."
                )
                return RollbackStackResult(stack_arn=_stack_arn(cloudformation_stack), not_in_rollbackable_state=True)

            if choice == RollbackChoice.START_ROLLBACK:
                await self.io_helper.debug(f"Initiating rollback of stack {deploy_name}")
                params = {
                    'StackName': deploy_name,
                    'ClientRequestToken': str(uuid.uuid4()),
                    # Enabling this is just the better overall default, the only reason it isn't the default is because it's new
                    'RetainExceptOnCreate': True,
                }
                if execution_role_arn:
                    params['RoleARN'] = execution_role_arn
                await aws_call(cfn.rollback_stack, **params)
            else:
                if options.orphan_failed_resources:
                    # Find the failed resources from the events of the current rollback
                    poller = StackEventPoller(
                        cfn,
                        deploy_name,
                        stack_statuses=['ROLLBACK_IN_PROGRESS', 'UPDATE_ROLLBACK_IN_PROGRESS'],
                    )
                    await poller.poll()
                    resources_to_skip = [
                        r.logical_id for r in poller.resource_errors
                        if not r.is_stack_event and not r.parent_stack_logical_ids
                    ]

                skip_description = f" (orphaning: {', '.join(resources_to_skip)})" if resources_to_skip else ''
                await self.io_helper.warn(f"Continuing rollback of stack {deploy_name}{skip_description}")
                params = {
                    'StackName': deploy_name,
                    'ClientRequestToken': str(uuid.uuid4()),
                }
                if execution_role_arn:
                    params['RoleARN'] = execution_role_arn
                if resources_to_skip:
                    params['ResourcesToSkip'] = resources_to_skip
                await aws_call(cfn.continue_update_rollback, **params)

            monitor = StackActivityMonitor(
                cfn,
                deploy_name,
                self.io_helper,
                stack=options.stack,
                poll_interval=self.settings.poll_interval,
                sleep=self.sleep,
            )
            await monitor.start()

            stabilize_error = None
            final_stack_state = cloudformation_stack
            try:
                success_stack = await stabilize_stack(cfn, self.io_helper, deploy_name, self.sleep, self.settings.poll_interval)
                if success_stack is None:
                    raise ToolkitError('Stack deploy failed (the stack disappeared while we were rolling it back)')
                final_stack_state = success_stack
            except (ToolkitError, ClientError) as e:
                stabilize_error = e
            finally:
                await monitor.stop()

            if stabilize_error is not None:
                stack_error_message = suffix_with_errors(format_error_message(stabilize_error), monitor.errors)
            elif monitor.errors:
                stack_error_message = ', '.join(monitor.errors)
            else:
                stack_error_message = None

            if final_stack_state.stack_status.is_rollback_success or not stack_error_message:
                return RollbackStackResult(stack_arn=_stack_arn(final_stack_state), success=True)

            # Either we need to ignore some resources to continue the rollback, or something went wrong
            if final_stack_state.stack_status.rollback_choice == RollbackChoice.CONTINUE_UPDATE_ROLLBACK \
                    and options.orphan_failed_resources:
                await self.io_helper.debug(f"Orphaning failed resources: {stack_error_message}")
                continue

            raise ToolkitError(
                f"{stack_error_message} (fix problem and retry, or orphan these resources using --orphan or --force)"
            )

        raise RollbackNoProgress(
            "Rollback did not finish after a large number of iterations; stopping because it looks like "
            "we're not making progress anymore. You can retry if rollback was progressing as expected."
        )

    async def destroy_stack(self, options: DestroyStackOptions):
        env = await self.env_access.access_stack_for_mutable_stack_operations(options.stack)
        execution_role_arn = await env.replace_placeholders(
            options.role_arn or options.stack.cloudformation_execution_role_arn
        )
        await destroy_stack(
            env.sdk,
            options.stack,
            self.io_helper,
            role_arn=execution_role_arn,
            deploy_name=options.deploy_name,
            sleep=self.sleep,
            poll_interval=self.settings.poll_interval,
        )

    async def stack_exists(self, options: StackExistsOptions) -> bool:
        if options.try_lookup_role:
            env = await self.env_access.access_stack_for_lookup_best_effort(options.stack)
        else:
            env = await self.env_access.access_stack_for_read_only_stack_operations(options.stack)
        stack = await CloudFormationStack.lookup(env.sdk.cloudformation(), options.deploy_name or options.stack.stack_name)
        return stack.exists

    async def build_and_publish_stack_assets(self, stack: StackArtifact, manifest: AssetManifest,
                                             parallel: Optional[bool] = None):
        """
        Build and publish every entry of a manifest with the stack's cached publisher.

        Raises:
            ToolkitError: if any entry failed
        """
        parallel = self.settings.asset_parallelism if parallel is None else parallel
        entries = list(manifest.entries)
        if not entries:
            return

        if parallel:
            await asyncio.gather(*(self.build_single_asset(NO_VERSION_VALIDATION, manifest, e, stack) for e in entries))
            await asyncio.gather(*(self.publish_single_asset(manifest, e, stack) for e in entries))
        else:
            for entry in entries:
                await self.build_single_asset(NO_VERSION_VALIDATION, manifest, entry, stack)
                await self.publish_single_asset(manifest, entry, stack)

    async def build_single_asset(self, asset_artifact, manifest: AssetManifest, entry, stack: StackArtifact,
                                 stack_name: Optional[str] = None):
        """
        Build one asset.

        Args:
            asset_artifact: Object carrying requires_bootstrap_stack_version and
                bootstrap_stack_version_ssm_parameter, or NO_VERSION_VALIDATION
            manifest: Manifest the entry belongs to
            entry: Entry to build
            stack: Stack owning the assets
        """
        env = await self.env_access.access_stack_for_read_only_stack_operations(stack)

        if asset_artifact != NO_VERSION_VALIDATION:
            await self.validate_bootstrap_stack_version(
                stack.stack_name,
                asset_artifact.requires_bootstrap_stack_version,
                asset_artifact.bootstrap_stack_version_ssm_parameter,
                env,
            )

        publisher = await self.cached_publisher(manifest, env.resolved_environment, stack_name or stack.display_name)
        await publisher.build_entry(entry)
        if publisher.has_failures:
            raise ToolkitError(f"Failed to build asset {entry.display_name(False)}")

    async def publish_single_asset(self, manifest: AssetManifest, entry, stack: StackArtifact,
                                   stack_name: Optional[str] = None, force_publish: bool = False):
        """Publish one asset, building it first if this session has not built it yet"""
        env = await self.env_access.access_stack_for_read_only_stack_operations(stack)

        publisher = await self.cached_publisher(manifest, env.resolved_environment, stack_name or stack.display_name)
        await publisher.publish_entry(
            entry,
            allow_cross_account=await self.allow_cross_account_asset_publishing(env),
            force=force_publish,
        )
        if publisher.has_failures:
            raise ToolkitError(f"Failed to publish asset {entry.display_name(True)}")

    async def is_single_asset_published(self, manifest: AssetManifest, entry, stack: StackArtifact) -> bool:
        env = await self.env_access.access_stack_for_read_only_stack_operations(stack)
        publisher = await self.cached_publisher(manifest, env.resolved_environment, stack.display_name)
        return await publisher.is_entry_published(entry)

    async def cached_publisher(self, manifest: AssetManifest, env: Environment,
                               stack_name: Optional[str] = None) -> AssetPublishing:
        """
        The publishing session of a manifest object, created on first use.

        Two calls with the same manifest object share the publisher, so
        build results and failures are visible to later publish calls.
        """
        key = id(manifest)
        async with self._publisher_lock:
            cached = self.publisher_cache.get(key)
            if cached is not None and cached[0] is manifest:
                return cached[1]

            prefix = f"{stack_name}: " if stack_name else ''
            publisher = AssetPublishing(
                manifest,
                self.sdk_provider,
                env,
                AssetProgressListener(self.io_helper, prefix),
            )
            self.publisher_cache[key] = (manifest, publisher)
            return publisher

    async def allow_cross_account_asset_publishing(self, env: TargetEnvironment) -> bool:
        """Computed once per coordinator, the first caller's environment decides"""
        async with self._cross_account_lock:
            if self._allow_cross_account_asset_publishing is None:
                self._allow_cross_account_asset_publishing = await determine_allow_cross_account_asset_publishing(
                    env.sdk, self.io_helper, self.settings.toolkit_stack_name,
                )
            return self._allow_cross_account_asset_publishing

    async def validate_bootstrap_stack_version(self, stack_name: str, requires_version: Optional[int],
                                               bootstrap_stack_version_ssm_parameter: Optional[str],
                                               env: TargetEnvironment):
        try:
            await env.resources.validate_version(requires_version, bootstrap_stack_version_ssm_parameter)
        except ToolkitError as e:
            raise type(e)(f"{stack_name}: {format_error_message(e)}") from e


def _stack_arn(cloudformation_stack: CloudFormationStack) -> str:
    return cloudformation_stack.stack_id if cloudformation_stack.exists else ''
