"""
CloudFormation stack status and the rollback action it implies.
"""
from enum import Enum
from typing import Optional


class RollbackChoice(Enum):
    START_ROLLBACK = 'START_ROLLBACK'
    CONTINUE_UPDATE_ROLLBACK = 'CONTINUE_UPDATE_ROLLBACK'
    # Failed creation rollbacks cannot be continued, there is no stable target state
    ROLLBACK_FAILED = 'ROLLBACK_FAILED'
    NONE = 'NONE'


class StackStatus:
    """
    A stack status string plus its reason.

    Args:
        name: Raw status, e.g. 'UPDATE_ROLLBACK_FAILED'
        reason: StackStatusReason reported by CloudFormation
    """

    def __init__(self, name: str, reason: Optional[str] = None):
        self.name = name
        self.reason = reason

    @classmethod
    def from_stack_description(cls, description: dict) -> 'StackStatus':
        return cls(description['StackStatus'], description.get('StackStatusReason'))

    @property
    def is_creation_failure(self) -> bool:
        return self.name in ('ROLLBACK_COMPLETE', 'ROLLBACK_FAILED')

    @property
    def is_deleted(self) -> bool:
        return self.name.startswith('DELETE_')

    @property
    def is_failure(self) -> bool:
        return self.name.endswith('FAILED')

    @property
    def is_in_progress(self) -> bool:
        return self.name.endswith('_IN_PROGRESS') and not self.is_review_in_progress

    @property
    def is_review_in_progress(self) -> bool:
        return self.name == 'REVIEW_IN_PROGRESS'

    @property
    def is_deploy_success(self) -> bool:
        return self.name in ('CREATE_COMPLETE', 'UPDATE_COMPLETE', 'IMPORT_COMPLETE')

    @property
    def is_rollback_success(self) -> bool:
        return self.name in ('ROLLBACK_COMPLETE', 'UPDATE_ROLLBACK_COMPLETE')

    @property
    def rollback_choice(self) -> RollbackChoice:
        if self.name in ('CREATE_FAILED', 'UPDATE_FAILED'):
            return RollbackChoice.START_ROLLBACK
        if self.name == 'UPDATE_ROLLBACK_FAILED':
            return RollbackChoice.CONTINUE_UPDATE_ROLLBACK
        if self.name == 'ROLLBACK_FAILED':
            return RollbackChoice.ROLLBACK_FAILED
        return RollbackChoice.NONE

    @property
    def is_rollbackable(self) -> bool:
        return self.rollback_choice in (RollbackChoice.START_ROLLBACK, RollbackChoice.CONTINUE_UPDATE_ROLLBACK)

    def __str__(self) -> str:
        return f"{self.name}{f' ({self.reason})' if self.reason else ''}"

    def __repr__(self) -> str:
        return f"StackStatus({self.name!r}, {self.reason!r})"
