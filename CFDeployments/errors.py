"""
Deployment errors.

Every failure surfaced by the deployment engine derives from ToolkitError.
"""
from botocore.exceptions import ClientError


class ToolkitError(Exception):
    """Base exception for deployment errors"""
    pass


class BootstrapVersionMismatch(ToolkitError):
    """The bootstrap stack in the target environment is too old for this stack"""
    pass


class MissingParameterValue(ToolkitError):
    """A template parameter has no override, no previous value and no default"""
    pass


class InvalidConfiguration(ToolkitError):
    """Options or asset metadata that cannot be combined"""
    pass


class UnsupportedAssetPackaging(ToolkitError):
    pass


class UnsupportedResourceType(ToolkitError):
    pass


class RollbackNoProgress(ToolkitError):
    """The rollback loop reached its iteration limit"""
    pass


class StackOperationFailed(ToolkitError):
    """CloudFormation reported a failed stack operation"""
    pass


class AssetPublishingError(ToolkitError):
    pass


def format_error_message(error: Exception) -> str:
    """
    Render an exception for inclusion in a user-facing message.

    ClientErrors are reduced to the service's own error message.
    """
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Message') or str(error)
    return str(error)


def is_stack_not_found(error: ClientError) -> bool:
    """True for the ValidationError CloudFormation returns for unknown stacks"""
    err = error.response.get('Error', {})
    return err.get('Code') == 'ValidationError' and 'does not exist' in err.get('Message', '')
