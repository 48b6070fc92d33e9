import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from CFDeployments.deployments import RollbackStackOptions
from CFDeployments.errors import BootstrapVersionMismatch, InvalidConfiguration, RollbackNoProgress, ToolkitError
from conftest import make_stack, running_monitors, stack_arn, stack_event


def rollback_options(**kwargs):
    kwargs.setdefault('validate_bootstrap_stack_version', False)
    return RollbackStackOptions(stack=make_stack(), **kwargs)


async def test_stable_stack_is_not_rolled_back(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE')

    result = await deployments.rollback_stack(rollback_options())

    assert result.not_in_rollbackable_state
    assert not result.success
    assert cfn.mutating_calls() == []


async def test_failed_creation_rollback_cannot_be_rolled_back(cfn, deployments, io_host):
    cfn.set_stack('MyStack', 'ROLLBACK_FAILED')

    result = await deployments.rollback_stack(rollback_options())

    assert result.not_in_rollbackable_state
    assert cfn.mutating_calls() == []
    assert any('cannot be rolled back' in text for text in io_host.texts('warn'))


async def test_failed_update_starts_rollback(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_FAILED')
    cfn.on_call['rollback_stack'] = lambda kwargs: cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_COMPLETE')

    result = await deployments.rollback_stack(rollback_options(role_arn='arn:aws:iam::${AWS::AccountId}:role/exec'))

    assert result.success
    assert result.stack_arn == stack_arn('MyStack')
    [call] = cfn.calls_to('rollback_stack')
    assert call['RetainExceptOnCreate'] is True
    assert call['RoleARN'] == 'arn:aws:iam::123456789012:role/exec'
    assert cfn.calls_to('continue_update_rollback') == []


async def test_orphaned_resources_are_skipped(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')
    cfn.on_call['continue_update_rollback'] = lambda kwargs: cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_COMPLETE')

    result = await deployments.rollback_stack(rollback_options(orphan_logical_ids=['Bucket', 'Queue']))

    assert result.success
    [call] = cfn.calls_to('continue_update_rollback')
    assert call['ResourcesToSkip'] == ['Bucket', 'Queue']


async def test_failed_rollback_suggests_orphaning(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')
    cfn.on_call['continue_update_rollback'] = lambda kwargs: cfn.add_event(
        'MyStack', stack_event('MyStack', 'Bucket', 'DELETE_FAILED', reason='Bucket is not empty'),
    )

    with pytest.raises(ToolkitError, match='--orphan or --force') as exc_info:
        await deployments.rollback_stack(rollback_options())

    assert 'Bucket is not empty' in str(exc_info.value)
    assert len(cfn.calls_to('continue_update_rollback')) == 1


async def test_force_orphans_failed_resources_on_the_next_iteration(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')

    def on_continue(kwargs):
        if 'ResourcesToSkip' in kwargs:
            cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_COMPLETE')
        else:
            cfn.add_event('MyStack', stack_event('MyStack', 'Bucket', 'DELETE_FAILED', reason='Bucket is not empty'))
    cfn.on_call['continue_update_rollback'] = on_continue

    result = await deployments.rollback_stack(rollback_options(orphan_failed_resources=True))

    assert result.success
    first, second = cfn.calls_to('continue_update_rollback')
    assert 'ResourcesToSkip' not in first
    assert second['ResourcesToSkip'] == ['Bucket']


async def test_rollback_gives_up_without_progress(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')
    cfn.on_call['continue_update_rollback'] = lambda kwargs: cfn.add_event(
        'MyStack', stack_event('MyStack', 'Bucket', 'DELETE_FAILED', reason='still failing'),
    )

    with pytest.raises(RollbackNoProgress):
        await deployments.rollback_stack(rollback_options(orphan_failed_resources=True))

    assert len(cfn.calls_to('continue_update_rollback')) == deployments.settings.max_rollback_iterations == 10


async def test_force_and_orphan_cannot_be_combined(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')

    with pytest.raises(InvalidConfiguration):
        await deployments.rollback_stack(rollback_options(orphan_failed_resources=True, orphan_logical_ids=['Bucket']))

    assert cfn.calls == []


async def test_rollback_requires_recent_bootstrap_stack(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_FAILED')

    with pytest.raises(BootstrapVersionMismatch, match='^MyStack: '):
        await deployments.rollback_stack(rollback_options(validate_bootstrap_stack_version=True))

    assert cfn.mutating_calls() == []


async def test_recent_bootstrap_stack_passes_validation(cfn, deployments):
    cfn.set_stack('CDKToolkit', 'UPDATE_COMPLETE', Outputs=[{'OutputKey': 'BootstrapVersion', 'OutputValue': '23'}])
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE')

    result = await deployments.rollback_stack(rollback_options(validate_bootstrap_stack_version=True))

    assert result.not_in_rollbackable_state


async def test_force_orphans_only_top_level_failures(cfn, deployments):
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    child_arn = stack_arn('MyStackChild')
    cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_FAILED')
    cfn.add_event('MyStack', stack_event(
        'MyStack', 'MyStack', 'UPDATE_ROLLBACK_IN_PROGRESS', physical_id=stack_arn('MyStack'), timestamp=start,
    ))
    cfn.add_event('MyStack', stack_event(
        'MyStack', 'Child', 'UPDATE_IN_PROGRESS',
        resource_type='AWS::CloudFormation::Stack', physical_id=child_arn, timestamp=start + timedelta(seconds=1),
    ))
    cfn.add_event(child_arn, stack_event(
        'MyStackChild', 'Queue', 'DELETE_FAILED', reason='Queue in use', timestamp=start + timedelta(seconds=2),
    ))
    cfn.add_event('MyStack', stack_event(
        'MyStack', 'Bucket', 'DELETE_FAILED', reason='Bucket is not empty', timestamp=start + timedelta(seconds=3),
    ))
    cfn.add_event('MyStack', stack_event(
        'MyStack', 'MyStack', 'UPDATE_ROLLBACK_FAILED', reason='Resources failed to delete',
        physical_id=stack_arn('MyStack'), timestamp=start + timedelta(seconds=4),
    ))
    cfn.on_call['continue_update_rollback'] = lambda kwargs: cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_COMPLETE')

    result = await deployments.rollback_stack(rollback_options(orphan_failed_resources=True))

    assert result.success
    [call] = cfn.calls_to('continue_update_rollback')
    assert call['ResourcesToSkip'] == ['Bucket']


async def test_cancelled_rollback_stops_monitoring(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_FAILED')
    cfn.on_call['rollback_stack'] = lambda kwargs: cfn.set_stack('MyStack', 'UPDATE_ROLLBACK_IN_PROGRESS')

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(deployments.rollback_stack(rollback_options()), timeout=0.3)

    assert len(cfn.calls_to('rollback_stack')) == 1
    assert running_monitors() == []
