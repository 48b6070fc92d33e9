"""
CloudFormation Deployments

Deploy, roll back, destroy and import CloudFormation stacks, with asset
publishing and live stack activity monitoring.
"""

from .aws_deployer import DeploymentMethod
from .config import DeploymentSettings, load_settings
from .deployment_result import (
    NeedRollbackFirstDeployStackResult,
    ReplacementRequiresRollbackStackResult,
    RollbackStackResult,
    SuccessfulDeployStackResult,
    assert_is_successful_deploy_stack_result,
)
from .deployments import (
    Deployments,
    DeployStackOptions,
    DestroyStackOptions,
    RollbackStackOptions,
    StackExistsOptions,
)
from .errors import ToolkitError
from .hotswap import HotswapMode
from .io_host import ConsoleIoHost, IoHelper
from .sdk import SdkProvider
from .stack_artifact import Environment, StackArtifact

__all__ = [
    'DeploymentMethod',
    'DeploymentSettings',
    'load_settings',
    'NeedRollbackFirstDeployStackResult',
    'ReplacementRequiresRollbackStackResult',
    'RollbackStackResult',
    'SuccessfulDeployStackResult',
    'assert_is_successful_deploy_stack_result',
    'Deployments',
    'DeployStackOptions',
    'DestroyStackOptions',
    'RollbackStackOptions',
    'StackExistsOptions',
    'ToolkitError',
    'HotswapMode',
    'ConsoleIoHost',
    'IoHelper',
    'SdkProvider',
    'Environment',
    'StackArtifact',
]
