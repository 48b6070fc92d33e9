"""
Deployment settings.

Values come from the environment (a local .env file is loaded first).
"""
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_TOOLKIT_STACK_NAME = 'CDKToolkit'

# Policy constants, overridable through the environment
DEFAULT_MAX_ROLLBACK_ITERATIONS = 10
DEFAULT_ACCOUNT_CACHE_MAX_ENTRIES = 1000


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _default_account_cache_path() -> str:
    cache_dir = os.getenv('CDK_CACHE_DIR') or str(Path.home() / '.cdk' / 'cache')
    return str(Path(cache_dir) / 'accounts_partitions.json')


@dataclass
class DeploymentSettings:
    """Settings shared by one deployments coordinator."""

    region: str = 'us-east-1'
    toolkit_stack_name: str = DEFAULT_TOOLKIT_STACK_NAME
    poll_interval: float = 5.0
    max_rollback_iterations: int = DEFAULT_MAX_ROLLBACK_ITERATIONS
    account_cache_path: str = ''
    account_cache_max_entries: int = DEFAULT_ACCOUNT_CACHE_MAX_ENTRIES
    asset_parallelism: bool = True

    def __post_init__(self):
        if not self.account_cache_path:
            self.account_cache_path = _default_account_cache_path()


def load_settings() -> DeploymentSettings:
    """
    Build settings from environment variables.

    Returns:
        DeploymentSettings populated from AWS_REGION, CDK_TOOLKIT_STACK_NAME,
        CFN_POLL_INTERVAL, CFN_MAX_ROLLBACK_ITERATIONS, CDK_ACCOUNT_CACHE,
        CDK_ACCOUNT_CACHE_MAX_ENTRIES and CDK_ASSET_PARALLELISM.
    """
    return DeploymentSettings(
        region=os.getenv('AWS_REGION', os.getenv('AWS_DEFAULT_REGION', 'us-east-1')),
        toolkit_stack_name=os.getenv('CDK_TOOLKIT_STACK_NAME', DEFAULT_TOOLKIT_STACK_NAME),
        poll_interval=float(os.getenv('CFN_POLL_INTERVAL', 5)),
        max_rollback_iterations=int(os.getenv('CFN_MAX_ROLLBACK_ITERATIONS', DEFAULT_MAX_ROLLBACK_ITERATIONS)),
        account_cache_path=os.getenv('CDK_ACCOUNT_CACHE', ''),
        account_cache_max_entries=int(os.getenv('CDK_ACCOUNT_CACHE_MAX_ENTRIES', DEFAULT_ACCOUNT_CACHE_MAX_ENTRIES)),
        asset_parallelism=_env_bool('CDK_ASSET_PARALLELISM', True),
    )
