import pytest

from CFDeployments.stack_status import RollbackChoice, StackStatus


@pytest.mark.parametrize('status, choice', [
    ('CREATE_FAILED', RollbackChoice.START_ROLLBACK),
    ('UPDATE_FAILED', RollbackChoice.START_ROLLBACK),
    ('UPDATE_ROLLBACK_FAILED', RollbackChoice.CONTINUE_UPDATE_ROLLBACK),
    ('ROLLBACK_FAILED', RollbackChoice.ROLLBACK_FAILED),
    ('UPDATE_COMPLETE', RollbackChoice.NONE),
    ('UPDATE_ROLLBACK_COMPLETE', RollbackChoice.NONE),
    ('DELETE_FAILED', RollbackChoice.NONE),
])
def test_rollback_choice(status, choice):
    assert StackStatus(status).rollback_choice == choice


def test_review_in_progress_is_not_in_progress():
    assert not StackStatus('REVIEW_IN_PROGRESS').is_in_progress
    assert StackStatus('UPDATE_ROLLBACK_IN_PROGRESS').is_in_progress


def test_creation_failures():
    assert StackStatus('ROLLBACK_COMPLETE').is_creation_failure
    assert StackStatus('ROLLBACK_FAILED').is_creation_failure
    assert not StackStatus('UPDATE_ROLLBACK_COMPLETE').is_creation_failure


def test_status_from_description():
    status = StackStatus.from_stack_description({'StackStatus': 'UPDATE_FAILED', 'StackStatusReason': 'Bucket exists'})

    assert status.is_failure
    assert status.is_rollbackable
    assert str(status) == 'UPDATE_FAILED (Bucket exists)'
    assert str(StackStatus('UPDATE_COMPLETE')) == 'UPDATE_COMPLETE'
