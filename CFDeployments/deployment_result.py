"""
Results of a single deploy attempt.

A deploy either succeeds, or stops before executing because the stack
first needs a rollback, or because the change needs rollback enabled.
"""
from dataclasses import dataclass, field
from typing import Dict, Union

from .errors import ToolkitError


@dataclass(frozen=True)
class SuccessfulDeployStackResult:
    no_op: bool
    outputs: Dict[str, str]
    stack_arn: str
    type: str = field(default='did-deploy-stack', init=False)


@dataclass(frozen=True)
class NeedRollbackFirstDeployStackResult:
    """
    The stack is paused in a failed state and must be rolled back before
    this change can be applied.

    Attributes:
        reason: 'not-norollback' or 'replacement'
        status: Current stack status
    """
    reason: str
    status: str
    type: str = field(default='failpaused-need-rollback-first', init=False)


@dataclass(frozen=True)
class ReplacementRequiresRollbackStackResult:
    """The change replaces resources, which is not possible with rollback disabled"""
    type: str = field(default='replacement-requires-rollback', init=False)


DeployStackResult = Union[
    SuccessfulDeployStackResult,
    NeedRollbackFirstDeployStackResult,
    ReplacementRequiresRollbackStackResult,
]


@dataclass(frozen=True)
class RollbackStackResult:
    stack_arn: str
    success: bool = False
    not_in_rollbackable_state: bool = False


def assert_is_successful_deploy_stack_result(result: DeployStackResult) -> SuccessfulDeployStackResult:
    if isinstance(result, SuccessfulDeployStackResult):
        return result
    if isinstance(result, NeedRollbackFirstDeployStackResult):
        raise ToolkitError(f"Stack is in a paused fail state ({result.status}) and needs to be rolled back first")
    if isinstance(result, ReplacementRequiresRollbackStackResult):
        raise ToolkitError('This deployment replaces resources, which requires rollback to be enabled')
    raise ToolkitError(f"Unexpected deploy result: {result!r}")
