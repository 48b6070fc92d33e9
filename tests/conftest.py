"""
Shared fixtures: in-memory stand-ins for the boto3 clients, an SdkProvider
that hands them out, and an IoHost that records what the engine says.
"""
import asyncio
import copy
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from CFDeployments.config import DeploymentSettings
from CFDeployments.deployments import Deployments
from CFDeployments.io_host import IoHelper
from CFDeployments.stack_artifact import UNKNOWN_ACCOUNT, UNKNOWN_REGION, Environment, StackArtifact

ACCOUNT = '123456789012'
REGION = 'us-east-1'

MUTATING_CALLS = {
    'create_change_set',
    'execute_change_set',
    'delete_change_set',
    'create_stack',
    'update_stack',
    'delete_stack',
    'rollback_stack',
    'continue_update_rollback',
    'update_termination_protection',
}


_event_ids = itertools.count(1)


def running_monitors() -> List[asyncio.Task]:
    """Activity monitor polling tasks that are still alive"""
    return [
        task for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__qualname__ == 'StackActivityMonitor._tick_loop'
    ]


async def no_sleep(_seconds):
    # Yield so background monitors can't starve the test
    await asyncio.sleep(0)


def client_error(code: str, message: str, operation: str = 'DescribeStacks') -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


def stack_arn(name: str) -> str:
    return f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:stack/{name}/0a1b2c3d"


def stack_description(name: str, status: str, **extra) -> Dict:
    description = {
        'StackName': name,
        'StackId': stack_arn(name),
        'StackStatus': status,
        'CreationTime': datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    description.update(extra)
    return description


def stack_event(stack_name: str, logical_id: str, status: str, reason: str = '',
                resource_type: str = 'AWS::S3::Bucket', physical_id: Optional[str] = None,
                timestamp: Optional[datetime] = None, event_id: Optional[str] = None) -> Dict:
    """A DescribeStackEvents entry; stack events use the stack ARN as physical ID"""
    stack_id = stack_arn(stack_name)
    return {
        'EventId': event_id or f"{logical_id}-{status}-{next(_event_ids)}",
        'StackName': stack_name,
        'StackId': stack_id,
        'LogicalResourceId': logical_id,
        'PhysicalResourceId': physical_id if physical_id is not None else f"{logical_id.lower()}-physical",
        'ResourceType': resource_type,
        'ResourceStatus': status,
        'ResourceStatusReason': reason,
        'Timestamp': timestamp or datetime.now(timezone.utc) + timedelta(hours=1),
    }


class FakeCloudFormation:
    """
    Just enough CloudFormation for the deployment engine.

    stacks maps a stack name to its current description (None once deleted).
    Hooks in on_call run after a call is recorded and may change the state
    or raise.
    """

    def __init__(self):
        self.stacks: Dict[str, Optional[Dict]] = {}
        self.templates: Dict[str, Dict] = {}
        self.events: Dict[str, List[Dict]] = {}
        self.change_set: Dict = {}
        self.template_summary: Dict = {'ResourceIdentifierSummaries': []}
        self.calls: List = []
        self.on_call: Dict = {}

    def set_stack(self, name: str, status: Optional[str], template: Optional[Dict] = None, **extra):
        self.stacks[name] = stack_description(name, status, **extra) if status else None
        if template is not None:
            self.templates[name] = template

    def add_event(self, stack_name: str, event: Dict):
        # Newest first, like the real API
        self.events.setdefault(stack_name, []).insert(0, event)

    def calls_to(self, name: str) -> List[Dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def mutating_calls(self) -> List[str]:
        return [call for call, _ in self.calls if call in MUTATING_CALLS]

    def _record(self, name: str, kwargs: Dict):
        self.calls.append((name, kwargs))
        hook = self.on_call.get(name)
        if hook is not None:
            hook(kwargs)

    def _name(self, name_or_id: str) -> str:
        if name_or_id in self.stacks:
            return name_or_id
        for name, description in self.stacks.items():
            if description and description['StackId'] == name_or_id:
                return name
        return name_or_id

    def describe_stacks(self, StackName):
        self._record('describe_stacks', {'StackName': StackName})
        description = self.stacks.get(self._name(StackName))
        if description is None:
            raise client_error('ValidationError', f"Stack with id {StackName} does not exist")
        return {'Stacks': [copy.deepcopy(description)]}

    def get_template(self, StackName, TemplateStage=None):
        self._record('get_template', {'StackName': StackName})
        return {'TemplateBody': json.dumps(self.templates.get(self._name(StackName), {}))}

    def describe_stack_events(self, StackName, NextToken=None):
        return {'StackEvents': list(self.events.get(StackName, []))}

    def create_change_set(self, **kwargs):
        self._record('create_change_set', kwargs)
        return {'Id': f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:changeSet/{kwargs['ChangeSetName']}/1"}

    def describe_change_set(self, StackName, ChangeSetName, NextToken=None):
        self._record('describe_change_set', {'StackName': StackName, 'ChangeSetName': ChangeSetName})
        description = {
            'ChangeSetName': ChangeSetName,
            'ChangeSetId': f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:changeSet/{ChangeSetName}/1",
            'StackId': stack_arn(StackName),
            'StackName': StackName,
            'Status': 'CREATE_COMPLETE',
            'Changes': [],
            'CreationTime': datetime.now(timezone.utc),
        }
        description.update(copy.deepcopy(self.change_set))
        return description

    def execute_change_set(self, **kwargs):
        self._record('execute_change_set', kwargs)
        return {}

    def delete_change_set(self, **kwargs):
        self._record('delete_change_set', kwargs)
        return {}

    def create_stack(self, **kwargs):
        self._record('create_stack', kwargs)
        return {'StackId': stack_arn(kwargs['StackName'])}

    def update_stack(self, **kwargs):
        self._record('update_stack', kwargs)
        return {'StackId': stack_arn(kwargs['StackName'])}

    def delete_stack(self, **kwargs):
        self._record('delete_stack', kwargs)
        return {}

    def rollback_stack(self, **kwargs):
        self._record('rollback_stack', kwargs)
        return {}

    def continue_update_rollback(self, **kwargs):
        self._record('continue_update_rollback', kwargs)
        return {}

    def update_termination_protection(self, **kwargs):
        self._record('update_termination_protection', kwargs)
        return {}

    def get_template_summary(self, **kwargs):
        self._record('get_template_summary', kwargs)
        return copy.deepcopy(self.template_summary)

    def describe_stack_resource(self, StackName, LogicalResourceId):
        return {'StackResourceDetail': {'PhysicalResourceId': f"{StackName}-{LogicalResourceId}"}}


class FakeSdk:
    """Stand-in for Sdk: fixed clients, fixed account"""

    def __init__(self, cfn: FakeCloudFormation):
        self.region = REGION
        self.cfn = cfn
        self.s3_client = MagicMock(name='s3')
        self.ecr_client = MagicMock(name='ecr')
        self.ssm_client = MagicMock(name='ssm')
        self.lambda_mock = MagicMock(name='lambda')
        self.lambda_mock.get_function_configuration.return_value = {'LastUpdateStatus': 'Successful'}

    def cloudformation(self):
        return self.cfn

    def s3(self):
        return self.s3_client

    def ecr(self):
        return self.ecr_client

    def ssm(self):
        return self.ssm_client

    def lambda_client(self):
        return self.lambda_mock

    async def current_account(self):
        return {'accountId': ACCOUNT, 'partition': 'aws'}


class FakeSdkProvider:
    """Stand-in for SdkProvider; every environment gets the same FakeSdk"""

    def __init__(self, sdk: FakeSdk):
        self.sdk = sdk
        self.requested = []

    async def base_credentials_account(self):
        return {'accountId': ACCOUNT, 'partition': 'aws'}

    async def resolve_environment(self, env: Environment) -> Environment:
        return Environment(
            account=ACCOUNT if env.account == UNKNOWN_ACCOUNT else env.account,
            region=REGION if env.region == UNKNOWN_REGION else env.region,
        )

    async def for_environment(self, env, mode='read', assume_role_arn=None, external_id=None):
        self.requested.append((mode, assume_role_arn))
        return self.sdk


class RecordingIoHost:
    """
    Keeps every message; answers requests from a script, then with defaults.
    """

    def __init__(self, answers=None):
        self.messages = []
        self.requests = []
        self.answers = list(answers or [])

    async def notify(self, msg):
        self.messages.append(msg)

    async def request_response(self, msg):
        self.requests.append(msg)
        if self.answers:
            return self.answers.pop(0)
        return msg.default_response

    def texts(self, level: Optional[str] = None) -> List[str]:
        return [m.message for m in self.messages if level is None or m.level == level]


def make_stack(name: str = 'MyStack', template: Optional[Dict] = None, **kwargs) -> StackArtifact:
    if template is None:
        template = {'Resources': {'Bucket': {'Type': 'AWS::S3::Bucket'}}}
    return StackArtifact(
        stack_name=name,
        template=template,
        environment=Environment(account=ACCOUNT, region=REGION),
        **kwargs,
    )


@pytest.fixture
def cfn():
    return FakeCloudFormation()


@pytest.fixture
def sdk(cfn):
    return FakeSdk(cfn)


@pytest.fixture
def sdk_provider(sdk):
    return FakeSdkProvider(sdk)


@pytest.fixture
def io_host():
    return RecordingIoHost()


@pytest.fixture
def io_helper(io_host):
    return IoHelper(io_host, 'deploy')


@pytest.fixture
def settings(tmp_path):
    return DeploymentSettings(
        region=REGION,
        poll_interval=0,
        account_cache_path=str(tmp_path / 'accounts.json'),
    )


@pytest.fixture
def deployments(sdk_provider, io_helper, settings):
    return Deployments(sdk_provider, io_helper, settings, sleep=no_sleep)
