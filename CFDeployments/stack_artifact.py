"""
Stack artifacts.

A StackArtifact is the synthesized form of one stack: the template, the
assets it references and the environment it targets. Artifacts are
produced elsewhere and never modified by the deployment engine.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

UNKNOWN_ACCOUNT = 'unknown-account'
UNKNOWN_REGION = 'unknown-region'


@dataclass(frozen=True)
class Environment:
    """An AWS account/region pair"""
    account: str
    region: str
    name: str = ''

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, 'name', f"aws://{self.account}/{self.region}")

    @property
    def is_resolved(self) -> bool:
        return self.account != UNKNOWN_ACCOUNT and self.region != UNKNOWN_REGION


@dataclass(frozen=True)
class StackArtifact:
    """
    Immutable description of a stack to deploy.

    Attributes:
        stack_name: Name of the CloudFormation stack
        template: Parsed CloudFormation template
        environment: Target account/region (may contain unknown placeholders)
        assets: Asset metadata entries ('file', 'zip' or 'container-image' packaging)
        dependencies: Names of stacks that must be deployed first
        requires_bootstrap_stack_version: Minimum bootstrap version, if any
        bootstrap_stack_version_ssm_parameter: SSM parameter holding the deployed bootstrap version
    """
    stack_name: str
    template: Dict[str, Any]
    environment: Environment
    assets: List[Dict[str, Any]] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    requires_bootstrap_stack_version: Optional[int] = None
    bootstrap_stack_version_ssm_parameter: Optional[str] = None
    cloudformation_execution_role_arn: Optional[str] = None
    assume_role_arn: Optional[str] = None
    assume_role_external_id: Optional[str] = None
    lookup_role_arn: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    termination_protection: bool = False
    notification_arns: List[str] = field(default_factory=list)
    assembly_directory: str = '.'
    stack_template_asset_object_url: Optional[str] = None
    display_name: str = ''

    def __post_init__(self):
        if not self.display_name:
            object.__setattr__(self, 'display_name', self.stack_name)

    @property
    def template_body(self) -> str:
        return json.dumps(self.template, indent=1)

    @property
    def resources(self) -> Dict[str, Any]:
        return self.template.get('Resources') or {}

    def resource_path(self, logical_id: str) -> str:
        """Construct path of a resource if recorded in its metadata, else the logical id"""
        resource = self.resources.get(logical_id) or {}
        return (resource.get('Metadata') or {}).get('aws:cdk:path', logical_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StackArtifact':
        """
        Build an artifact from its JSON form.

        Args:
            data: Dictionary with keys matching the attribute names; the
                  environment is given as {"account": ..., "region": ...}

        Returns:
            StackArtifact
        """
        env = data.get('environment') or {}
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != 'environment'}
        return cls(
            environment=Environment(
                account=env.get('account', UNKNOWN_ACCOUNT),
                region=env.get('region', UNKNOWN_REGION),
            ),
            **kwargs,
        )
