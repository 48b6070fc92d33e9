"""
Hotswap Deployments

Applies Lambda code changes directly through the Lambda API instead of
running a CloudFormation update. Any other kind of change makes the
deployment non-hotswappable.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from botocore.exceptions import ClientError

from .deployment_result import SuccessfulDeployStackResult
from .errors import ToolkitError
from .resourceImport.template_diff import ResourceDifference, full_diff
from .sdk import Sdk, aws_call

logger = logging.getLogger(__name__)

LAMBDA_FUNCTION = 'AWS::Lambda::Function'

# Resource types whose changes never matter for a hotswap
IGNORED_RESOURCE_TYPES = ('AWS::CDK::Metadata',)


class HotswapMode(Enum):
    # Try a hotswap, do a full deployment if anything can't be hotswapped
    FALL_BACK = 'fall-back'
    # Hotswap what can be hotswapped, never do a full deployment
    HOTSWAP_ONLY = 'hotswap-only'
    FULL_DEPLOYMENT = 'full-deployment'


class CfnEvaluationException(ToolkitError):
    """An expression in the template could not be resolved locally"""
    pass


class TemplateEvaluator:
    """
    Resolves the intrinsic functions that appear in asset coordinates:
    Ref, Fn::Join, Fn::Select, Fn::Split and Fn::Sub.

    Args:
        parameters: Parameter values of the deployment
        account: Target account ID
        region: Target region
        partition: Target partition
    """

    def __init__(self, parameters: Dict[str, str], account: str, region: str, partition: str = 'aws'):
        self.values = dict(parameters)
        self.values.update({
            'AWS::AccountId': account,
            'AWS::Region': region,
            'AWS::Partition': partition,
            'AWS::URLSuffix': 'amazonaws.com.cn' if partition == 'aws-cn' else 'amazonaws.com',
        })

    def evaluate(self, expression: Any) -> Any:
        if isinstance(expression, list):
            return [self.evaluate(e) for e in expression]
        if not isinstance(expression, dict):
            return expression

        if len(expression) == 1:
            name, args = next(iter(expression.items()))
            if name == 'Ref':
                return self._ref(args)
            if name == 'Fn::Join':
                separator, parts = args
                return separator.join(str(p) for p in self.evaluate(parts))
            if name == 'Fn::Select':
                index, items = args
                return self.evaluate(items)[int(self.evaluate(index))]
            if name == 'Fn::Split':
                separator, source = args
                return str(self.evaluate(source)).split(separator)
            if name == 'Fn::Sub':
                return self._sub(args)
            if name.startswith('Fn::'):
                raise CfnEvaluationException(f"We don't support the '{name}' CloudFormation function yet")

        return {k: self.evaluate(v) for k, v in expression.items()}

    def _ref(self, name: str) -> str:
        if name not in self.values:
            raise CfnEvaluationException(f"Parameter or resource '{name}' could not be found for evaluation")
        return self.values[name]

    def _sub(self, args) -> str:
        if isinstance(args, list):
            template, variables = args
            variables = {k: self.evaluate(v) for k, v in variables.items()}
        else:
            template, variables = args, {}

        result = ''
        rest = template
        while '${' in rest:
            before, _, after = rest.partition('${')
            name, closing, rest = after.partition('}')
            if not closing:
                raise CfnEvaluationException(f"Unterminated variable in Fn::Sub: {template}")
            result += before
            if name.startswith('!'):
                result += '${' + name[1:] + '}'
            elif name in variables:
                result += str(variables[name])
            else:
                result += str(self._ref(name))
        return result + rest


class HotswappableChange:
    """A Lambda function whose code can be updated in place"""

    def __init__(self, logical_id: str, function_name: str, code: Dict):
        self.logical_id = logical_id
        self.function_name = function_name
        self.code = code


def classify_changes(resource_changes: Dict[str, ResourceDifference]) -> Dict[str, List[str]]:
    """
    Split resource changes into hotswappable and non-hotswappable ones.

    Returns:
        {'hotswappable': [logicalId, ...], 'nonHotswappable': [logicalId, ...]}
    """
    hotswappable, non_hotswappable = [], []
    for logical_id, change in resource_changes.items():
        if change.resource_type in IGNORED_RESOURCE_TYPES:
            continue
        if change.is_update and change.resource_type == LAMBDA_FUNCTION \
                and change.old_resource_type == change.new_resource_type \
                and set(change.property_updates.keys()) == {'Code'} and not change.other_changes:
            hotswappable.append(logical_id)
        else:
            non_hotswappable.append(logical_id)
    return {'hotswappable': hotswappable, 'nonHotswappable': non_hotswappable}


async def try_hotswap_deployment(
    sdk: Sdk,
    io_helper,
    stack,
    cloudformation_stack,
    parameter_values: Dict[str, str],
    resolved_environment,
    mode: HotswapMode,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    poll_interval: float = 1.0,
):
    """
    Attempt to deploy a stack by updating Lambda code directly.

    Args:
        sdk: Sdk for the target environment
        io_helper: IoHelper for progress messages
        stack: StackArtifact being deployed
        cloudformation_stack: Deployed CloudFormationStack
        parameter_values: Parameter values of this deployment, for resolving asset coordinates
        resolved_environment: Target Environment
        mode: FALL_BACK or HOTSWAP_ONLY

    Returns:
        A SuccessfulDeployStackResult, or None when a full deployment is needed
    """
    if not cloudformation_stack.exists:
        return None

    current_template = await cloudformation_stack.template()
    diff = full_diff(current_template, stack.template)
    classified = classify_changes(diff.resources.changes)

    if classified['nonHotswappable']:
        names = ', '.join(stack.resource_path(logical_id) for logical_id in classified['nonHotswappable'])
        if mode == HotswapMode.FALL_BACK:
            await io_helper.info(f"Could not perform a hotswap deployment, as the stack {stack.display_name} contains non-Asset changes: {names}")
            return None
        await io_helper.warn(f"The following non-hotswappable changes were found and are ignored: {names}")

    if not classified['hotswappable']:
        await io_helper.info(f"{stack.display_name}: hotswap deployment skipped - no changes were detected")
        return SuccessfulDeployStackResult(no_op=True, outputs=cloudformation_stack.outputs, stack_arn=cloudformation_stack.stack_id)

    partition = (await sdk.current_account())['partition']
    evaluator = TemplateEvaluator(
        parameter_values,
        resolved_environment.account,
        resolved_environment.region,
        partition,
    )

    changes = []
    for logical_id in classified['hotswappable']:
        resource = stack.resources[logical_id]
        properties = resource.get('Properties') or {}
        function_name = properties.get('FunctionName')
        if function_name is not None:
            function_name = evaluator.evaluate(function_name)
        else:
            function_name = await _physical_name(sdk, cloudformation_stack.stack_name, logical_id)
        changes.append(HotswappableChange(logical_id, function_name, evaluator.evaluate(properties['Code'])))

    await io_helper.info(f"{stack.display_name}: hotswapping {len(changes)} Lambda function(s)...")
    for change in changes:
        await _update_function_code(sdk, io_helper, change, sleep, poll_interval)

    await io_helper.result(f"{stack.display_name}: hotswap deployment complete")
    return SuccessfulDeployStackResult(no_op=False, outputs=cloudformation_stack.outputs, stack_arn=cloudformation_stack.stack_id)


async def _physical_name(sdk: Sdk, stack_name: str, logical_id: str) -> str:
    try:
        response = await aws_call(
            sdk.cloudformation().describe_stack_resource,
            StackName=stack_name,
            LogicalResourceId=logical_id,
        )
    except ClientError as e:
        raise CfnEvaluationException(f"Could not find physical name of {logical_id}: {e.response['Error']['Message']}")
    return response['StackResourceDetail']['PhysicalResourceId']


async def _update_function_code(sdk: Sdk, io_helper, change: HotswappableChange, sleep, poll_interval: float):
    code = change.code
    params: Dict[str, Any] = {'FunctionName': change.function_name}
    if code.get('ImageUri'):
        params['ImageUri'] = code['ImageUri']
    elif code.get('S3Bucket') and code.get('S3Key'):
        params['S3Bucket'] = code['S3Bucket']
        params['S3Key'] = code['S3Key']
        if code.get('S3ObjectVersion'):
            params['S3ObjectVersion'] = code['S3ObjectVersion']
    else:
        raise CfnEvaluationException(f"Unsupported Code for hotswapping {change.logical_id}: {sorted(code.keys())}")

    lambda_client = sdk.lambda_client()
    await io_helper.info(f"   hotswapping Lambda Function '{change.function_name}'")
    await aws_call(lambda_client.update_function_code, **params)

    # Wait for the update to finish so a following deploy sees the new code
    while True:
        config = await aws_call(lambda_client.get_function_configuration, FunctionName=change.function_name)
        status = config.get('LastUpdateStatus')
        if status == 'InProgress':
            await sleep(poll_interval)
            continue
        if status == 'Failed':
            raise ToolkitError(
                f"Hotswap of Lambda Function '{change.function_name}' failed: {config.get('LastUpdateStatusReason')}"
            )
        break
    await io_helper.info(f"   hotswapped Lambda Function '{change.function_name}'")
