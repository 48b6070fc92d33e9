"""
Resource Import Module

Template diffing and the workflow that imports existing resources into a stack.
"""

from .template_diff import DifferenceCollection, ResourceDifference, TemplateDiff, deep_equal, full_diff
from .importer import (
    DiscoverImportableResourcesResult,
    ImportDeploymentOptions,
    ImportMap,
    ImportableResource,
    ResourceImporter,
    add_default_deletion_policy,
    remove_non_import_resources,
)

__all__ = [
    'DifferenceCollection',
    'ResourceDifference',
    'TemplateDiff',
    'deep_equal',
    'full_diff',
    'DiscoverImportableResourcesResult',
    'ImportDeploymentOptions',
    'ImportMap',
    'ImportableResource',
    'ResourceImporter',
    'add_default_deletion_policy',
    'remove_non_import_resources',
]
