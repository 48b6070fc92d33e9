"""
AWS CloudFormation Deployment Module

Deploys one stack: prepares assets and parameters, decides whether the
deployment can be skipped or hotswapped, then submits the template
directly or through a change set and waits for the stack to stabilize.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from botocore.exceptions import ClientError

from .assetPublishing import AssetManifestBuilder, add_metadata_assets_to_manifest, publish_assets
from .cfn_api import (
    CloudFormationStack,
    ParameterValues,
    TemplateParameters,
    changeset_has_no_changes,
    cleanup_old_change_set,
    make_body_parameter,
    wait_for_change_set,
    wait_for_stack_delete,
    wait_for_stack_deploy,
)
from .deploymentModal.activity_monitor import StackActivityMonitor
from .deploymentModal.deployment_formatter import format_stack_complete
from .deployment_result import (
    DeployStackResult,
    NeedRollbackFirstDeployStackResult,
    ReplacementRequiresRollbackStackResult,
    SuccessfulDeployStackResult,
)
from .environment import EnvironmentResources, determine_allow_cross_account_asset_publishing
from .errors import InvalidConfiguration, StackOperationFailed, ToolkitError, format_error_message
from .hotswap import CfnEvaluationException, HotswapMode, try_hotswap_deployment
from .sdk import Sdk, SdkProvider, aws_call
from .stack_artifact import Environment, StackArtifact

logger = logging.getLogger(__name__)

# Required when the template creates IAM resources or uses macros
CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND']

DEFAULT_CHANGE_SET_NAME = 'cdk-deploy-change-set'

NO_UPDATES_MESSAGE = 'No updates are to be performed.'


@dataclass
class DeploymentMethod:
    """
    How the template is submitted.

    Attributes:
        method: 'change-set' or 'direct'
        change_set_name: Name of the change set (change-set only)
        execute: Execute the change set after creating it (change-set only)
        import_existing_resources: Let CloudFormation adopt existing resources (change-set only)
    """
    method: str = 'change-set'
    change_set_name: Optional[str] = None
    execute: bool = True
    import_existing_resources: bool = False

    @classmethod
    def direct(cls) -> 'DeploymentMethod':
        return cls(method='direct')

    @classmethod
    def change_set(cls, change_set_name: Optional[str] = None, execute: bool = True,
                   import_existing_resources: bool = False) -> 'DeploymentMethod':
        return cls('change-set', change_set_name, execute, import_existing_resources)

    def __post_init__(self):
        if self.method not in ('change-set', 'direct'):
            raise InvalidConfiguration(f"Unknown deployment method: {self.method}")


@dataclass
class DeployStackParams:
    """
    Everything deploy_stack needs, resolved by the deployments coordinator.

    Attributes:
        stack: Stack to deploy
        resolved_environment: Target environment with account and region known
        sdk: Sdk with deploy-role credentials for the environment
        sdk_provider: SdkProvider used for asset publishing
        env_resources: EnvironmentResources of the target environment
        role_arn: Execution role passed to CloudFormation
        parameters: Parameter overrides (None values mean "not supplied")
        resources_to_import: Resources to import instead of create
        override_template: Template to submit instead of the stack's own
        allow_cross_account_asset_publishing: Precomputed permission, looked up when None
    """
    stack: StackArtifact
    resolved_environment: Environment
    sdk: Sdk
    sdk_provider: SdkProvider
    env_resources: EnvironmentResources
    deploy_name: Optional[str] = None
    role_arn: Optional[str] = None
    notification_arns: Optional[List[str]] = None
    reuse_assets: Optional[List[str]] = None
    tags: Optional[List[Dict[str, str]]] = None
    deployment_method: Optional[DeploymentMethod] = None
    force_deployment: bool = False
    parameters: Dict[str, Optional[str]] = field(default_factory=dict)
    use_previous_parameters: bool = True
    rollback: bool = True
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    resources_to_import: Optional[List[Dict[str, Any]]] = None
    override_template: Optional[Dict] = None
    asset_parallelism: bool = True
    allow_cross_account_asset_publishing: Optional[bool] = None
    poll_interval: float = 5.0
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep


def stack_tags(tags: Union[Dict[str, str], List[Dict[str, str]], None]) -> List[Dict[str, str]]:
    """Tags in the [{'Key': ..., 'Value': ...}] form CloudFormation uses"""
    if not tags:
        return []
    if isinstance(tags, dict):
        return [{'Key': k, 'Value': v} for k, v in tags.items()]
    return list(tags)


def _compare_tags(a: List[Dict[str, str]], b: List[Dict[str, str]]) -> bool:
    return {t['Key']: t['Value'] for t in a} == {t['Key']: t['Value'] for t in b}


def suffix_with_errors(message: str, errors: Optional[List[str]] = None) -> str:
    if errors:
        return f"{message}: {', '.join(errors)}"
    return message


async def deploy_stack(options: DeployStackParams, io_helper) -> DeployStackResult:
    """
    Deploy a stack.

    Args:
        options: DeployStackParams
        io_helper: IoHelper receiving progress messages

    Returns:
        SuccessfulDeployStackResult, NeedRollbackFirstDeployStackResult or
        ReplacementRequiresRollbackStackResult

    Raises:
        ToolkitError: validation failures happen before any mutating call;
            CloudFormation failures are reported with the stack name
    """
    stack = options.stack
    deploy_name = options.deploy_name or stack.stack_name
    cfn = options.sdk.cloudformation()

    try:
        cloudformation_stack = await CloudFormationStack.lookup(cfn, deploy_name)

        if cloudformation_stack.stack_status.is_creation_failure:
            await io_helper.debug(
                f"Found existing stack {deploy_name} that had previously failed creation. "
                f"Deleting it before attempting to re-create it."
            )
            await aws_call(cfn.delete_stack, StackName=deploy_name)
            await wait_for_stack_delete(cfn, io_helper, deploy_name, options.sleep, options.poll_interval)
            cloudformation_stack = CloudFormationStack.does_not_exist(cfn, deploy_name)

        # Assets referenced through stack metadata are published from an ad-hoc
        # manifest, their locations go to the template as parameters
        legacy_assets = AssetManifestBuilder()
        asset_params = await add_metadata_assets_to_manifest(
            io_helper, stack, legacy_assets, options.env_resources, options.reuse_assets,
        )

        final_parameter_values = dict(options.parameters or {})
        final_parameter_values.update(asset_params)
        template_params = TemplateParameters.from_template(options.override_template or stack.template)
        if options.use_previous_parameters:
            stack_params = template_params.update_existing(final_parameter_values, cloudformation_stack.parameters)
        else:
            stack_params = template_params.supply_all(final_parameter_values)

        if await can_skip_deploy(options, cloudformation_stack, stack_params.has_changes(cloudformation_stack.parameters), io_helper):
            await io_helper.debug(f"{deploy_name}: skipping deployment (use --force to override)")
            if options.hotswap != HotswapMode.FULL_DEPLOYMENT:
                await io_helper.info('hotswap deployment skipped - no changes were detected (use --force to override)')
            return SuccessfulDeployStackResult(
                no_op=True,
                outputs=cloudformation_stack.outputs,
                stack_arn=cloudformation_stack.stack_id,
            )
        await io_helper.debug(f"{deploy_name}: deploying...")

        body_parameter = await make_body_parameter(
            io_helper, stack, options.resolved_environment, legacy_assets,
            options.env_resources, options.override_template,
        )

        # Imports never publish assets
        if options.resources_to_import is None:
            allow_cross_account = options.allow_cross_account_asset_publishing
            if allow_cross_account is None:
                allow_cross_account = await determine_allow_cross_account_asset_publishing(
                    options.sdk, io_helper, options.env_resources.toolkit_stack_name,
                )
            manifest = legacy_assets.to_manifest(stack.assembly_directory)
            if not manifest.is_empty:
                await publish_assets(
                    manifest,
                    options.sdk_provider,
                    options.resolved_environment,
                    io_helper,
                    parallel=options.asset_parallelism,
                    allow_cross_account=allow_cross_account,
                    stack_name=stack.display_name,
                )

        if options.hotswap != HotswapMode.FULL_DEPLOYMENT:
            try:
                hotswap_result = await try_hotswap_deployment(
                    options.sdk, io_helper, stack, cloudformation_stack, stack_params.values,
                    options.resolved_environment, options.hotswap, options.sleep,
                )
                if hotswap_result is not None:
                    return hotswap_result
            except CfnEvaluationException as e:
                await io_helper.info(
                    f"Could not perform a hotswap deployment, because the CloudFormation template could not be resolved: {e}"
                )

            if options.hotswap == HotswapMode.FALL_BACK:
                await io_helper.info('Falling back to doing a full deployment')
            else:
                return SuccessfulDeployStackResult(
                    no_op=True,
                    outputs=cloudformation_stack.outputs,
                    stack_arn=cloudformation_stack.stack_id if cloudformation_stack.exists else '',
                )

        deployment = FullCloudFormationDeployment(
            options, cloudformation_stack, stack_params, body_parameter, io_helper,
        )
        return await deployment.perform_deployment()
    except ClientError as e:
        raise StackOperationFailed(f"{deploy_name}: {format_error_message(e)}") from e


async def can_skip_deploy(options: DeployStackParams, cloudformation_stack: CloudFormationStack,
                          parameter_changes: Union[bool, str], io_helper) -> bool:
    """
    Whether the deployed stack already matches what would be deployed.
    """
    deploy_name = options.deploy_name or options.stack.stack_name
    await io_helper.debug(f"{deploy_name}: checking if we can skip deploy")

    if options.force_deployment:
        await io_helper.debug(f"{deploy_name}: forced deployment")
        return False

    method = options.deployment_method
    if method is not None and method.method == 'change-set' and not method.execute:
        await io_helper.debug(f"{deploy_name}: --no-execute, always creating change set")
        return False

    if options.resources_to_import is not None:
        await io_helper.debug(f"{deploy_name}: importing resources")
        return False

    if not cloudformation_stack.exists:
        await io_helper.debug(f"{deploy_name}: no existing stack")
        return False

    if (options.override_template or options.stack.template) != await cloudformation_stack.template():
        await io_helper.debug(f"{deploy_name}: template has changed")
        return False

    if not _compare_tags(cloudformation_stack.tags, stack_tags(options.tags)):
        await io_helper.debug(f"{deploy_name}: tags have changed")
        return False

    if sorted(cloudformation_stack.notification_arns) != sorted(options.notification_arns or []):
        await io_helper.debug(f"{deploy_name}: notification arns have changed")
        return False

    if bool(options.stack.termination_protection) != cloudformation_stack.termination_protection:
        await io_helper.debug(f"{deploy_name}: termination protection has been updated")
        return False

    if parameter_changes:
        if parameter_changes == 'ssm':
            await io_helper.debug(f"{deploy_name}: some parameters come from SSM so we have to assume they may have changed")
        else:
            await io_helper.debug(f"{deploy_name}: parameters have changed")
        return False

    if cloudformation_stack.stack_status.is_failure:
        await io_helper.debug(f"{deploy_name}: stack is in a failure state")
        return False

    return True


class FullCloudFormationDeployment:
    """
    A deployment that goes through CloudFormation (as opposed to a hotswap).
    """

    def __init__(self, options: DeployStackParams, cloudformation_stack: CloudFormationStack,
                 stack_params: ParameterValues, body_parameter: Dict[str, str], io_helper):
        self.options = options
        self.cloudformation_stack = cloudformation_stack
        self.stack_params = stack_params
        self.body_parameter = body_parameter
        self.io_helper = io_helper

        self.stack = options.stack
        self.stack_name = options.deploy_name or options.stack.stack_name
        self.cfn = options.sdk.cloudformation()
        self.update = cloudformation_stack.exists and cloudformation_stack.stack_status.name != 'REVIEW_IN_PROGRESS'
        self.verb = 'update' if self.update else 'create'
        self.uuid = str(uuid.uuid4())

    async def perform_deployment(self) -> DeployStackResult:
        method = self.options.deployment_method or DeploymentMethod()

        if method.method == 'direct' and self.options.resources_to_import:
            raise InvalidConfiguration('Importing resources requires a changeset deployment')

        if method.method == 'change-set':
            return await self.change_set_deployment(method)
        return await self.direct_deployment()

    async def change_set_deployment(self, method: DeploymentMethod) -> DeployStackResult:
        change_set_name = method.change_set_name or DEFAULT_CHANGE_SET_NAME
        description = await self.create_change_set(change_set_name, method.import_existing_resources)
        await self.update_termination_protection()

        if changeset_has_no_changes(description):
            await self.io_helper.debug(f"No changes are to be performed on {self.stack_name}.")
            if method.execute:
                await self.io_helper.debug(f"Deleting empty change set {description.get('ChangeSetId')}")
                await aws_call(self.cfn.delete_change_set, StackName=self.stack_name, ChangeSetName=change_set_name)

            if self.options.force_deployment:
                await self.io_helper.warn(
                    'You used the --force flag, but CloudFormation reported that the deployment would not make any changes.\n'
                    'According to CloudFormation, all resources are already up-to-date with the state in your app.\n\n'
                    'You cannot use the --force flag to get rid of changes you made in the console. Try using\n'
                    'CloudFormation drift detection instead: '
                    'https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/using-cfn-stack-drift.html'
                )
            return SuccessfulDeployStackResult(
                no_op=True,
                outputs=self.cloudformation_stack.outputs,
                stack_arn=description.get('StackId', ''),
            )

        if not method.execute:
            await self.io_helper.info(
                f"Changeset {description.get('ChangeSetId')} created and waiting in review for manual execution (--no-execute)"
            )
            return SuccessfulDeployStackResult(
                no_op=False,
                outputs=self.cloudformation_stack.outputs,
                stack_arn=description.get('StackId', ''),
            )

        # A stack paused in a failed state must be rolled back before executing
        replacement = any(
            (change.get('ResourceChange') or {}).get('Replacement') == 'True'
            for change in description.get('Changes') or []
        )
        is_paused_fail_state = self.cloudformation_stack.stack_status.is_rollbackable
        rollback = self.options.rollback
        if is_paused_fail_state and replacement:
            return NeedRollbackFirstDeployStackResult(reason='replacement', status=self.cloudformation_stack.stack_status.name)
        if is_paused_fail_state and rollback:
            return NeedRollbackFirstDeployStackResult(reason='not-norollback', status=self.cloudformation_stack.stack_status.name)
        if not rollback and replacement:
            return ReplacementRequiresRollbackStackResult()

        return await self.execute_change_set(description)

    async def create_change_set(self, change_set_name: str, import_existing_resources: bool) -> Dict:
        await self.cleanup_old_change_set(change_set_name)

        await self.io_helper.debug(f"Attempting to create ChangeSet with name {change_set_name} to {self.verb} stack {self.stack_name}")
        await self.io_helper.info(f"{self.stack_name}: creating CloudFormation changeset...")

        if self.options.resources_to_import:
            change_set_type = 'IMPORT'
        else:
            change_set_type = 'UPDATE' if self.update else 'CREATE'

        params = {
            'StackName': self.stack_name,
            'ChangeSetName': change_set_name,
            'ChangeSetType': change_set_type,
            'Description': f"Changeset for execution {self.uuid}",
            'ClientToken': f"create{self.uuid}",
            'ImportExistingResources': import_existing_resources,
        }
        if self.options.resources_to_import:
            params['ResourcesToImport'] = self.options.resources_to_import
        params.update(self.common_prepare_options())

        response = await aws_call(self.cfn.create_change_set, **params)
        await self.io_helper.debug(f"Initiated creation of changeset: {response.get('Id')}; waiting for it to finish creating...")

        return await wait_for_change_set(
            self.cfn, self.io_helper, self.stack_name, change_set_name,
            self.options.sleep, self.options.poll_interval,
        )

    async def execute_change_set(self, change_set: Dict) -> SuccessfulDeployStackResult:
        await self.io_helper.debug(f"Initiating execution of changeset {change_set.get('ChangeSetId')} on stack {self.stack_name}")

        await aws_call(
            self.cfn.execute_change_set,
            ChangeSetName=change_set['ChangeSetName'],
            ClientRequestToken=f"exec{self.uuid}",
            **self.common_execute_options(),
        )

        await self.io_helper.debug(
            f"Execution of changeset {change_set.get('ChangeSetId')} on stack {self.stack_name} has started; "
            f"waiting for the update to complete..."
        )

        # +1 for the extra event emitted from updates
        change_set_length = len(change_set.get('Changes') or []) + (1 if self.update else 0)
        return await self.monitor_deployment(change_set.get('CreationTime'), change_set_length)

    async def cleanup_old_change_set(self, change_set_name: str):
        if self.cloudformation_stack.exists:
            # Change set names must be unique
            await cleanup_old_change_set(self.cfn, self.io_helper, self.stack_name, change_set_name)

    async def update_termination_protection(self):
        termination_protection = bool(self.stack.termination_protection)
        if self.cloudformation_stack.termination_protection != termination_protection:
            await self.io_helper.debug(
                f"Updating termination protection from {self.cloudformation_stack.termination_protection} "
                f"to {termination_protection} for stack {self.stack_name}"
            )
            await aws_call(
                self.cfn.update_termination_protection,
                StackName=self.stack_name,
                EnableTerminationProtection=termination_protection,
            )
            await self.io_helper.debug(f"Termination protection updated to {termination_protection} for stack {self.stack_name}")

    async def direct_deployment(self) -> SuccessfulDeployStackResult:
        await self.io_helper.info(f"{self.stack_name}: {'updating' if self.update else 'creating'} stack...")
        start_time = datetime.now(timezone.utc)

        if self.update:
            await self.update_termination_protection()
            try:
                await aws_call(
                    self.cfn.update_stack,
                    ClientRequestToken=f"update{self.uuid}",
                    **self.common_prepare_options(),
                    **self.common_execute_options(),
                )
            except ClientError as e:
                if format_error_message(e) == NO_UPDATES_MESSAGE:
                    await self.io_helper.debug(f"No updates are to be performed for stack {self.stack_name}")
                    return SuccessfulDeployStackResult(
                        no_op=True,
                        outputs=self.cloudformation_stack.outputs,
                        stack_arn=self.cloudformation_stack.stack_id,
                    )
                raise
            return await self.monitor_deployment(start_time, None)

        params = {'ClientRequestToken': f"create{self.uuid}"}
        # Termination protection can be set at creation time
        if self.stack.termination_protection:
            params['EnableTerminationProtection'] = True
        params.update(self.common_prepare_options())
        params.update(self.common_execute_options())
        await aws_call(self.cfn.create_stack, **params)
        return await self.monitor_deployment(start_time, None)

    async def monitor_deployment(self, start_time: Optional[datetime], expected_changes: Optional[int]) -> SuccessfulDeployStackResult:
        monitor = StackActivityMonitor(
            self.cfn,
            self.stack_name,
            self.io_helper,
            stack=self.stack,
            resources_total=expected_changes,
            change_set_creation_time=start_time,
            poll_interval=self.options.poll_interval,
            sleep=self.options.sleep,
        )
        await monitor.start()

        error = None
        try:
            final_state = await wait_for_stack_deploy(
                self.cfn, self.io_helper, self.stack_name, self.options.sleep, self.options.poll_interval,
            )
            if final_state is None:
                raise ToolkitError('Stack deploy failed (the stack disappeared while we were deploying it)')
        except (ToolkitError, ClientError) as e:
            error = e
        finally:
            await monitor.stop()

        if error is not None:
            raise StackOperationFailed(suffix_with_errors(format_error_message(error), monitor.errors)) from error

        await self.io_helper.result(
            f"Stack {self.stack_name} has completed updating",
            data=format_stack_complete(self.stack_name, final_state.stack_status.name, final_state.outputs),
        )
        return SuccessfulDeployStackResult(no_op=False, outputs=final_state.outputs, stack_arn=final_state.stack_id)

    def common_prepare_options(self) -> Dict[str, Any]:
        options = {
            'Capabilities': CAPABILITIES,
            'NotificationARNs': self.options.notification_arns,
            'Parameters': self.stack_params.api_parameters,
            'RoleARN': self.options.role_arn,
            'Tags': stack_tags(self.options.tags),
        }
        options.update(self.body_parameter)
        # boto3 rejects None for optional arguments
        return {k: v for k, v in options.items() if v is not None}

    def common_execute_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {'StackName': self.stack_name}
        if not self.options.rollback:
            options['DisableRollback'] = True
        return options


async def destroy_stack(sdk: Sdk, stack: StackArtifact, io_helper, role_arn: Optional[str] = None,
                        deploy_name: Optional[str] = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                        poll_interval: float = 5.0):
    """
    Delete a stack and wait until it is gone.

    Does nothing if the stack does not exist.
    """
    deploy_name = deploy_name or stack.stack_name
    cfn = sdk.cloudformation()

    current_stack = await CloudFormationStack.lookup(cfn, deploy_name)
    if not current_stack.exists:
        return

    monitor = StackActivityMonitor(cfn, deploy_name, io_helper, stack=stack, poll_interval=poll_interval, sleep=sleep)
    await monitor.start()

    error = None
    try:
        params = {'StackName': deploy_name}
        if role_arn:
            params['RoleARN'] = role_arn
        await aws_call(cfn.delete_stack, **params)
        await wait_for_stack_delete(cfn, io_helper, deploy_name, sleep, poll_interval)
    except (ToolkitError, ClientError) as e:
        error = e
    finally:
        await monitor.stop()

    if error is not None:
        raise StackOperationFailed(suffix_with_errors(f"{deploy_name}: {format_error_message(error)}", monitor.errors)) from error
