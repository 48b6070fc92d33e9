from datetime import datetime, timedelta, timezone

from CFDeployments.deploymentModal.activity_monitor import StackActivityMonitor, StackProgress
from CFDeployments.deploymentModal.event_tracker import StackEventPoller
from CFDeployments.io_host import IO
from conftest import client_error, make_stack, no_sleep, stack_arn, stack_event

BASE = datetime(2030, 1, 1, tzinfo=timezone.utc)


def at(seconds):
    return BASE + timedelta(seconds=seconds)


async def test_nested_stack_events_are_attributed(cfn):
    child_arn = stack_arn('RootChild')
    cfn.add_event('Root', stack_event('Root', 'Root', 'UPDATE_IN_PROGRESS', physical_id=stack_arn('Root'), timestamp=at(0)))
    cfn.add_event('Root', stack_event(
        'Root', 'Child', 'UPDATE_IN_PROGRESS',
        resource_type='AWS::CloudFormation::Stack', physical_id=child_arn, timestamp=at(1),
    ))
    cfn.add_event(child_arn, stack_event('RootChild', 'Queue', 'UPDATE_FAILED', reason='Access denied', timestamp=at(2)))

    poller = StackEventPoller(cfn, 'Root')
    events = await poller.poll()

    assert [e.logical_id for e in events] == ['Root', 'Child', 'Queue']
    assert events[0].is_stack_event
    assert events[2].parent_stack_logical_ids == ['Child']
    assert [e.logical_id for e in poller.resource_errors] == ['Queue']
    assert poller.resource_statuses['Child/Queue']['status'] == 'UPDATE_FAILED'


async def test_events_are_only_returned_once(cfn):
    cfn.add_event('MyStack', stack_event('MyStack', 'Bucket', 'CREATE_IN_PROGRESS', timestamp=at(0)))
    poller = StackEventPoller(cfn, 'MyStack')

    assert len(await poller.poll()) == 1
    assert await poller.poll() == []

    cfn.add_event('MyStack', stack_event('MyStack', 'Bucket', 'CREATE_COMPLETE', timestamp=at(1)))
    [event] = await poller.poll()
    assert event.status == 'CREATE_COMPLETE'


async def test_reading_stops_at_operation_start(cfn):
    cfn.add_event('MyStack', stack_event('MyStack', 'Old', 'UPDATE_FAILED', timestamp=at(0)))
    cfn.add_event('MyStack', stack_event(
        'MyStack', 'MyStack', 'UPDATE_ROLLBACK_IN_PROGRESS', physical_id=stack_arn('MyStack'), timestamp=at(1),
    ))
    cfn.add_event('MyStack', stack_event('MyStack', 'Bucket', 'DELETE_FAILED', timestamp=at(2)))

    poller = StackEventPoller(cfn, 'MyStack', stack_statuses=['ROLLBACK_IN_PROGRESS', 'UPDATE_ROLLBACK_IN_PROGRESS'])
    await poller.poll()

    assert [e.logical_id for e in poller.resource_errors] == ['Bucket']


async def test_events_before_start_time_are_ignored(cfn):
    cfn.add_event('MyStack', stack_event('MyStack', 'Old', 'CREATE_COMPLETE', timestamp=at(0)))
    cfn.add_event('MyStack', stack_event('MyStack', 'New', 'CREATE_COMPLETE', timestamp=at(10)))

    poller = StackEventPoller(cfn, 'MyStack', start_time=at(5))

    assert [e.logical_id for e in await poller.poll()] == ['New']


async def test_missing_stack_has_no_events(cfn):
    def not_found(StackName, NextToken=None):
        raise client_error('ValidationError', f"Stack [{StackName}] does not exist", 'DescribeStackEvents')
    cfn.describe_stack_events = not_found

    assert await StackEventPoller(cfn, 'Gone').poll() == []


async def test_stack_summary_counts(cfn):
    cfn.add_event('MyStack', stack_event('MyStack', 'A', 'CREATE_COMPLETE', timestamp=at(0)))
    cfn.add_event('MyStack', stack_event('MyStack', 'B', 'CREATE_IN_PROGRESS', timestamp=at(1)))
    cfn.add_event('MyStack', stack_event('MyStack', 'C', 'CREATE_FAILED', timestamp=at(2)))

    poller = StackEventPoller(cfn, 'MyStack')
    await poller.poll()
    summary = poller.get_stack_summary()

    assert summary['totalResources'] == 3
    assert (summary['completedResources'], summary['inProgressResources'], summary['failedResources']) == (1, 1, 1)
    assert summary['progress'] == 66


def test_progress_counts_rolled_back_resources_once():
    progress = StackProgress(total=2)
    progress.update('A', 'CREATE_COMPLETE')
    progress.update('B', 'CREATE_COMPLETE')
    progress.update('A', 'DELETE_COMPLETE')

    assert progress.completed == 1
    assert progress.formatted == '1/2'


async def test_monitor_collects_failure_reasons(cfn, io_helper, io_host):
    stack = make_stack(template={'Resources': {'Bucket': {
        'Type': 'AWS::S3::Bucket',
        'Metadata': {'aws:cdk:path': 'MyStack/Bucket/Resource'},
    }}})
    monitor = StackActivityMonitor(cfn, 'MyStack', io_helper, stack=stack, poll_interval=0, sleep=no_sleep)

    await monitor.start()
    cfn.add_event('MyStack', stack_event('MyStack', 'Bucket', 'CREATE_FAILED', reason='Bucket exists'))
    cfn.add_event('MyStack', stack_event('MyStack', 'Other', 'CREATE_FAILED', reason='Resource creation cancelled'))
    await monitor.stop()

    assert monitor.errors == ['MyStack/Bucket/Resource: Bucket exists']
    codes = [m.code for m in io_host.messages]
    assert codes[0] == IO.STACK_MONITOR_START
    assert codes[-1] == IO.STACK_MONITOR_STOP
    assert codes.count(IO.STACK_ACTIVITY) == 2
