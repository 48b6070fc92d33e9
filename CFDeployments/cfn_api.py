"""
CloudFormation API helpers

Stack lookup, parameter resolution, change set handling and waiting for
stacks to stabilize.
"""
import asyncio
import hashlib
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import yaml
from botocore.exceptions import ClientError

from .errors import MissingParameterValue, StackOperationFailed, ToolkitError, is_stack_not_found
from .sdk import aws_call
from .stack_status import StackStatus

logger = logging.getLogger(__name__)

# Parameters whose description contains this marker do not force a
# redeployment just because they are read from SSM
SSMPARAM_NO_INVALIDATE = '[cdk:skip]'

# Templates above this size have to be passed by URL
LARGE_TEMPLATE_SIZE_KB = 50

Sleep = Callable[[float], Awaitable[Any]]


class _CfnYamlLoader(yaml.SafeLoader):
    pass


def _cfn_tag_constructor(loader, tag_suffix, node):
    name = 'Ref' if tag_suffix == 'Ref' else f"Fn::{tag_suffix}"
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
        if tag_suffix == 'GetAtt' and isinstance(value, str):
            value = value.split('.', 1)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {name: value}


_CfnYamlLoader.add_multi_constructor('!', _cfn_tag_constructor)


def deserialize_template(body: Union[str, Dict, None]) -> Dict:
    """
    Parse a template body as returned by GetTemplate.

    JSON and YAML (including short-form intrinsics like !Ref) are accepted.
    """
    if not body:
        return {}
    if isinstance(body, dict):
        return body
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return yaml.load(body, Loader=_CfnYamlLoader) or {}


class CloudFormationStack:
    """
    Snapshot of a stack as returned by DescribeStacks.

    Use CloudFormationStack.lookup() to create one. A stack that does not
    exist is represented by an object whose 'exists' is False.
    """

    def __init__(self, cfn, stack_name: str, stack: Optional[Dict] = None):
        self.cfn = cfn
        self.stack_name = stack_name
        self.stack = stack
        self._template = None

    @classmethod
    async def lookup(cls, cfn, stack_name: str) -> 'CloudFormationStack':
        try:
            response = await aws_call(cfn.describe_stacks, StackName=stack_name)
        except ClientError as e:
            if is_stack_not_found(e):
                return cls(cfn, stack_name, None)
            raise
        stacks = response.get('Stacks') or []
        return cls(cfn, stack_name, stacks[0] if stacks else None)

    @classmethod
    def does_not_exist(cls, cfn, stack_name: str) -> 'CloudFormationStack':
        return cls(cfn, stack_name, None)

    async def template(self) -> Dict:
        """
        Retrieve the stack's deployed template (an empty dict if the stack does not exist)
        """
        if not self.exists:
            return {}

        if self._template is None:
            response = await aws_call(self.cfn.get_template, StackName=self.stack_id)
            self._template = deserialize_template(response.get('TemplateBody'))
        return self._template

    @property
    def exists(self) -> bool:
        return self.stack is not None

    @property
    def stack_id(self) -> str:
        self._assert_exists()
        return self.stack['StackId']

    @property
    def stack_status(self) -> StackStatus:
        if not self.exists:
            return StackStatus('NOT_FOUND', 'Stack not found during lookup')
        return StackStatus.from_stack_description(self.stack)

    @property
    def outputs(self) -> Dict[str, str]:
        if not self.exists:
            return {}
        return {o['OutputKey']: o.get('OutputValue') for o in self.stack.get('Outputs') or []}

    @property
    def parameters(self) -> Dict[str, str]:
        """Current parameter values (resolved values for SSM-backed parameters)"""
        if not self.exists:
            return {}
        ret = {}
        for p in self.stack.get('Parameters') or []:
            ret[p['ParameterKey']] = p.get('ResolvedValue', p.get('ParameterValue'))
        return ret

    @property
    def tags(self) -> List[Dict[str, str]]:
        return (self.stack or {}).get('Tags') or []

    @property
    def notification_arns(self) -> List[str]:
        return (self.stack or {}).get('NotificationARNs') or []

    @property
    def termination_protection(self) -> bool:
        return bool((self.stack or {}).get('EnableTerminationProtection'))

    def _assert_exists(self):
        if not self.exists:
            raise ToolkitError(f"No stack named '{self.stack_name}'")


class ParameterValues:
    """
    The parameter values to submit for one deployment.

    Resolution order per template parameter: override, previous value,
    template default. A parameter with none of these is an error.
    """

    def __init__(self, formal_params: Dict[str, Dict], updates: Dict[str, Optional[str]],
                 previous_values: Optional[Dict[str, str]] = None):
        self.formal_params = formal_params
        self.values: Dict[str, str] = {}
        self.api_parameters: List[Dict[str, Any]] = []
        previous_values = previous_values or {}

        missing_required = []
        for key, formal_param in formal_params.items():
            updated_value = updates.get(key)
            # '' is a real value, only None means "not supplied"
            if updated_value is not None:
                self.values[key] = updated_value
                self.api_parameters.append({'ParameterKey': key, 'ParameterValue': updated_value})
                continue

            if key in previous_values:
                self.values[key] = previous_values[key]
                self.api_parameters.append({'ParameterKey': key, 'UsePreviousValue': True})
                continue

            if formal_param.get('Default') is not None:
                # Let CloudFormation apply the default
                self.values[key] = formal_param['Default']
                continue

            missing_required.append(key)

        if missing_required:
            raise MissingParameterValue(
                f"The following CloudFormation Parameters are missing a value: {', '.join(missing_required)}"
            )

        # Overrides the template does not declare are passed on anyway, CloudFormation reports typos
        for key, value in updates.items():
            if key not in formal_params and value:
                self.values[key] = value
                self.api_parameters.append({'ParameterKey': key, 'ParameterValue': value})

    def has_changes(self, current_values: Dict[str, str]) -> Union[bool, str]:
        """
        Whether these values differ from the stack's current values.

        Returns:
            'ssm' if any parameter is read from SSM without the no-invalidate
            marker (the resolved value can't be predicted), else a bool
        """
        for param in self.formal_params.values():
            if str(param.get('Type', '')).startswith('AWS::SSM::Parameter::') \
                    and SSMPARAM_NO_INVALIDATE not in (param.get('Description') or ''):
                return 'ssm'

        if set(current_values.keys()) != set(self.values.keys()):
            return True

        return any(current_values.get(key) != value for key, value in self.values.items())


class TemplateParameters:
    """The Parameters section of a template"""

    def __init__(self, params: Dict[str, Dict]):
        self.params = params

    @classmethod
    def from_template(cls, template: Dict) -> 'TemplateParameters':
        return cls(template.get('Parameters') or {})

    def supply_all(self, updates: Dict[str, Optional[str]]) -> ParameterValues:
        """Values for a stack with no previous values (new stack, or previous values not allowed)"""
        return ParameterValues(self.params, updates)

    def update_existing(self, updates: Dict[str, Optional[str]], previous_values: Dict[str, str]) -> ParameterValues:
        """Values for an existing stack, reusing previous values where nothing is supplied"""
        return ParameterValues(self.params, updates, previous_values)


def changeset_has_no_changes(description: Dict) -> bool:
    """
    True if a FAILED change set only failed because there was nothing to change.
    """
    reason = description.get('StatusReason') or ''
    no_change_errors = (
        "didn't contain changes",
        'No updates are to be performed',
        'submitted information does not contain changes',
    )
    return description.get('Status') == 'FAILED' \
        and not description.get('Changes') \
        and any(msg in reason for msg in no_change_errors)


async def wait_for_change_set(cfn, io_helper, stack_name: str, change_set_name: str,
                              sleep: Sleep = asyncio.sleep, poll_interval: float = 5.0) -> Dict:
    """
    Wait until a change set is created (or failed because it is empty).

    Args:
        cfn: CloudFormation client
        io_helper: IoHelper for progress messages
        stack_name: Name of the stack
        change_set_name: Name of the change set

    Returns:
        The DescribeChangeSet response, with all pages of Changes merged
    """
    await io_helper.debug(f"Waiting for changeset {change_set_name} on stack {stack_name} to finish creating...")

    while True:
        description = await describe_change_set(cfn, stack_name, change_set_name)
        status = description.get('Status')

        if status in ('CREATE_PENDING', 'CREATE_IN_PROGRESS'):
            await io_helper.debug(f"Changeset {change_set_name} on stack {stack_name} is still creating")
            await sleep(poll_interval)
            continue

        if status == 'CREATE_COMPLETE' or changeset_has_no_changes(description):
            return description

        raise StackOperationFailed(
            f"Failed to create ChangeSet {change_set_name} on {stack_name}: "
            f"{status or 'NO_STATUS'}, {description.get('StatusReason') or 'no reason provided'}"
        )


async def describe_change_set(cfn, stack_name: str, change_set_name: str) -> Dict:
    """DescribeChangeSet, following NextToken so all Changes are included"""
    response = await aws_call(cfn.describe_change_set, StackName=stack_name, ChangeSetName=change_set_name)
    changes = list(response.get('Changes') or [])
    next_token = response.get('NextToken')
    while next_token:
        page = await aws_call(
            cfn.describe_change_set,
            StackName=stack_name,
            ChangeSetName=change_set_name,
            NextToken=next_token,
        )
        changes.extend(page.get('Changes') or [])
        next_token = page.get('NextToken')
    response['Changes'] = changes
    return response


async def cleanup_old_change_set(cfn, io_helper, stack_name: str, change_set_name: str):
    """Delete a leftover change set with the same name, if the stack exists"""
    await io_helper.debug(f"Removing existing change set with name {change_set_name} if it exists")
    try:
        await aws_call(cfn.delete_change_set, StackName=stack_name, ChangeSetName=change_set_name)
    except ClientError as e:
        code = e.response['Error']['Code']
        if code not in ('ChangeSetNotFound', 'ChangeSetNotFoundException', 'ValidationError'):
            raise


async def stabilize_stack(cfn, io_helper, stack_name: str,
                          sleep: Sleep = asyncio.sleep, poll_interval: float = 5.0) -> Optional[CloudFormationStack]:
    """
    Poll until the stack leaves its in-progress state.

    Returns:
        The stack in its final state, or None if the stack does not exist
        (for example after a successful delete).
    """
    await io_helper.debug(f"Waiting for stack {stack_name} to finish creating or updating...")

    while True:
        stack = await CloudFormationStack.lookup(cfn, stack_name)
        if not stack.exists:
            await io_helper.debug(f"Stack {stack_name} does not exist")
            return None

        status = stack.stack_status
        if status.is_in_progress:
            await io_helper.debug(f"Stack {stack_name} has an ongoing operation in progress and is not stable ({status})")
            await sleep(poll_interval)
            continue

        if status.is_review_in_progress:
            # A stack created by a change set that has not been executed yet
            await io_helper.debug(f"Stack {stack_name} is in REVIEW_IN_PROGRESS state. Considering this is a stable status ({status})")
        return stack


async def wait_for_stack_deploy(cfn, io_helper, stack_name: str,
                                sleep: Sleep = asyncio.sleep, poll_interval: float = 5.0) -> Optional[CloudFormationStack]:
    """
    Wait for a create or update to finish and fail unless it succeeded.
    """
    stack = await stabilize_stack(cfn, io_helper, stack_name, sleep, poll_interval)
    if stack is None:
        return None

    status = stack.stack_status
    if status.is_creation_failure:
        raise StackOperationFailed(
            f"The stack named {stack_name} failed creation, it may need to be manually deleted "
            f"from the AWS console: {status}"
        )
    if not status.is_deploy_success:
        raise StackOperationFailed(f"The stack named {stack_name} failed to deploy: {status}")
    return stack


async def wait_for_stack_delete(cfn, io_helper, stack_name: str,
                                sleep: Sleep = asyncio.sleep, poll_interval: float = 5.0) -> None:
    stack = await stabilize_stack(cfn, io_helper, stack_name, sleep, poll_interval)
    if stack is None:
        return

    status = stack.stack_status
    if status.is_failure:
        raise StackOperationFailed(f"The stack named {stack_name} is in a failed state. You may need to delete it from the AWS console : {status}")
    if not status.is_deleted:
        raise StackOperationFailed(f"The stack named {stack_name} is in an unexpected state: {status}")


async def load_current_template(stack, cfn) -> Dict:
    """Deployed template of a stack artifact's stack"""
    cfn_stack = await CloudFormationStack.lookup(cfn, stack.stack_name)
    return await cfn_stack.template()


def rest_url_from_s3_url(s3_url: str, region: str) -> str:
    """Turn s3://bucket/key into the https URL CloudFormation accepts"""
    if not s3_url.startswith('s3://'):
        return s3_url
    bucket, _, key = s3_url[len('s3://'):].partition('/')
    return f"https://s3.{region}.amazonaws.com/{bucket}/{key}"


async def make_body_parameter(io_helper, stack, resolved_env, asset_builder, env_resources,
                              template: Optional[Dict] = None) -> Dict[str, str]:
    """
    TemplateBody or TemplateURL argument for a CloudFormation call.

    Large templates are added to the asset manifest and passed by URL; the
    caller must publish the manifest before using the returned parameter.
    """
    if template is None and stack.stack_template_asset_object_url:
        url = stack.stack_template_asset_object_url \
            .replace('${AWS::AccountId}', resolved_env.account) \
            .replace('${AWS::Region}', resolved_env.region)
        return {'TemplateURL': rest_url_from_s3_url(url, resolved_env.region)}

    body = json.dumps(template if template is not None else stack.template, indent=1)
    if len(body.encode('utf-8')) <= LARGE_TEMPLATE_SIZE_KB * 1024:
        return {'TemplateBody': body}

    toolkit_info = await env_resources.lookup_toolkit()
    if not toolkit_info.found:
        raise ToolkitError(
            f"The template for stack \"{stack.display_name}\" is {len(body) // 1024}KiB. "
            f"Templates larger than {LARGE_TEMPLATE_SIZE_KB}KiB must be uploaded to S3.\n"
            f"Run the following command in order to setup an S3 bucket in this environment, and then re-deploy:\n\n"
            f"\tcdk bootstrap {resolved_env.name}\n"
        )

    template_hash = hashlib.sha256(body.encode('utf-8')).hexdigest()
    key = f"cdk/{stack.stack_name}/{template_hash}.yml"

    template_file = f"{stack.stack_name}.template-{template_hash}.json"
    with open(os.path.join(stack.assembly_directory, template_file), 'w') as f:
        f.write(body)

    asset_builder.add_file_asset(template_hash, {'path': template_file, 'packaging': 'file'}, {
        'bucketName': toolkit_info.bucket_name,
        'objectKey': key,
    })

    template_url = f"{toolkit_info.bucket_url}/{key}"
    await io_helper.debug(f"Storing template in S3 at: {template_url}")
    return {'TemplateURL': template_url}
