"""
Resource Importer

Brings existing resources under management of a stack: finds the
resources the desired template adds, works out the identifiers of the
physical resources to adopt, and runs an IMPORT deployment.
"""
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..deployment_result import assert_is_successful_deploy_stack_result
from ..errors import InvalidConfiguration, UnsupportedResourceType
from ..io_host import IO
from ..stack_artifact import StackArtifact
from .template_diff import ResourceDifference, full_diff

logger = logging.getLogger(__name__)

# Resource type -> list of identifier property sets
ResourceIdentifiers = Dict[str, List[List[str]]]


@dataclass
class ImportableResource:
    """
    A resource added by the desired template that can be imported.

    Attributes:
        logical_id: Logical ID in the template
        resource_definition: Template definition, with a DeletionPolicy
        resource_diff: Difference between deployed and desired definition
    """
    logical_id: str
    resource_definition: Dict[str, Any]
    resource_diff: ResourceDifference


@dataclass
class ImportMap:
    """
    Resources to import plus the identifier properties of each.

    Attributes:
        resource_map: Logical ID -> {identifier property: value}
        import_resources: Resources that will be imported
    """
    resource_map: Dict[str, Dict[str, str]] = field(default_factory=dict)
    import_resources: List[ImportableResource] = field(default_factory=list)


@dataclass
class DiscoverImportableResourcesResult:
    additions: List[ImportableResource]
    has_non_additions: bool


@dataclass
class ImportDeploymentOptions:
    """Deployment options passed through to the import deployment"""
    role_arn: Optional[str] = None
    deployment_method: Any = None
    tags: Optional[List[Dict[str, str]]] = None
    use_previous_parameters: bool = True
    rollback: bool = True


class ResourceImporter:
    """
    Import workflow for one stack.

    Args:
        stack: Stack whose template contains the resources to import
        deployments: Deployments coordinator
        io_helper: IoHelper for messages and identifier questions
    """

    def __init__(self, stack: StackArtifact, deployments, io_helper):
        self.stack = stack
        self.deployments = deployments
        self.io_helper = io_helper
        self._current_template: Optional[Dict] = None

    async def ask_for_resource_identifiers(self, available: List[ImportableResource]) -> ImportMap:
        """
        Ask the user for the identifiers of the resources to import.

        Resources the user skips are left out of the returned ImportMap.
        """
        ret = ImportMap()
        resource_identifiers = await self.resource_identifiers()

        for resource in available:
            identifier = await self.ask_for_resource_identifier(resource_identifiers, resource)
            if not identifier:
                continue

            ret.import_resources.append(resource)
            ret.resource_map[resource.logical_id] = identifier

        return ret

    async def load_resource_identifiers(self, available: List[ImportableResource], filename: str) -> ImportMap:
        """
        Read resource identifiers from a JSON file mapping logical IDs to identifier properties.
        """
        with open(filename, 'r') as f:
            contents = json.load(f)

        return await self.resource_identifiers_from_mapping(available, contents)

    async def resource_identifiers_from_mapping(self, available: List[ImportableResource],
                                                mapping: Dict[str, Dict[str, str]]) -> ImportMap:
        """ImportMap from a logical ID -> identifier properties mapping; unmapped resources are skipped"""
        contents = dict(mapping)
        ret = ImportMap()
        for resource in available:
            descr = self.describe_resource(resource.logical_id)
            id_props = contents.get(resource.logical_id)
            if id_props:
                await self.io_helper.info(f"{descr}: importing using {fmtdict(id_props)}")

                ret.import_resources.append(resource)
                ret.resource_map[resource.logical_id] = id_props
                del contents[resource.logical_id]
            else:
                await self.io_helper.info(f"{descr}: skipping")

        unknown = list(contents.keys())
        if unknown:
            await self.io_helper.warn(f"Unrecognized resource identifiers in mapping file: {', '.join(unknown)}")

        return ret

    async def import_resources_from_map(self, import_map: ImportMap, options: Optional[ImportDeploymentOptions] = None):
        """Import the resources of an ImportMap into the deployed stack"""
        resources_to_import = self.make_resources_to_import(import_map)
        updated_template = await self.current_template_with_additions(import_map.import_resources)

        await self._import_resources(updated_template, resources_to_import, options or ImportDeploymentOptions())

    async def import_resources_from_migrate(self, resources_to_import: List[Dict], options: Optional[ImportDeploymentOptions] = None):
        """Import into a new stack created from existing resources"""
        updated_template = remove_non_import_resources(self.stack)

        await self._import_resources(updated_template, resources_to_import, options or ImportDeploymentOptions())

    async def _import_resources(self, override_template: Dict, resources_to_import: List[Dict],
                                options: ImportDeploymentOptions):
        # deployments imports this package (through hotswap), so import it late
        from ..deployments import DeployStackOptions

        try:
            result = await self.deployments.deploy_stack(DeployStackOptions(
                stack=self.stack,
                deploy_name=self.stack.stack_name,
                role_arn=options.role_arn,
                deployment_method=options.deployment_method,
                tags=options.tags,
                use_previous_parameters=options.use_previous_parameters,
                rollback=options.rollback,
                override_template=override_template,
                resources_to_import=resources_to_import,
            ))

            result = assert_is_successful_deploy_stack_result(result)

            suffix = ' (no changes)' if result.no_op else ''
            await self.io_helper.info(f"\n ✅  {self.stack.display_name}{suffix}")
        except Exception as e:
            await self.io_helper.notify('error', f"\n ❌  {self.stack.display_name} failed: {e}", IO.IMPORT_FAILED, {'error': str(e)})
            raise

    async def discover_importable_resources(self, allow_non_additions: bool = False) -> DiscoverImportableResourcesResult:
        """
        Find the resources the desired template adds to the deployed one.

        Args:
            allow_non_additions: Warn instead of failing when resources are also updated or deleted

        Raises:
            InvalidConfiguration: the template updates or deletes resources and allow_non_additions is False
        """
        current_template = await self.current_template()

        diff = full_diff(current_template, self.stack.template)

        # CDKMetadata is always different, it never counts
        resource_changes = [
            (logical_id, change) for logical_id, change in diff.resources.changes.items()
            if logical_id != 'CDKMetadata'
        ]

        non_additions = [(logical_id, change) for logical_id, change in resource_changes if not change.is_addition]
        additions = [(logical_id, change) for logical_id, change in resource_changes if change.is_addition]

        if non_additions:
            offending_resources = ', '.join(self.describe_resource(logical_id) for logical_id, _ in non_additions)

            if allow_non_additions:
                await self.io_helper.warn(f"Ignoring updated/deleted resources (--force): {offending_resources}")
            else:
                raise InvalidConfiguration(
                    'No resource updates or deletes are allowed on import operation. Make sure to resolve pending changes '
                    f"to existing resources, before attempting an import. Updated/deleted resources: {offending_resources} "
                    '(--force to override)'
                )

        return DiscoverImportableResourcesResult(
            additions=[
                ImportableResource(
                    logical_id=logical_id,
                    resource_diff=change,
                    resource_definition=add_default_deletion_policy(self.stack.resources.get(logical_id) or {}),
                )
                for logical_id, change in additions
            ],
            has_non_additions=bool(non_additions),
        )

    async def resolve_environment(self):
        return await self.deployments.resolve_environment(self.stack)

    async def current_template(self) -> Dict:
        if self._current_template is None:
            self._current_template = await self.deployments.read_current_template(self.stack)
        return self._current_template

    async def current_template_with_additions(self, additions: List[ImportableResource]) -> Dict:
        """Deployed template plus the definitions of the resources being imported"""
        template = copy.deepcopy(await self.current_template())
        template.setdefault('Resources', {})

        for add in additions:
            template['Resources'][add.logical_id] = add.resource_definition

        return template

    async def resource_identifiers(self) -> ResourceIdentifiers:
        ret: ResourceIdentifiers = {}
        for summary in await self.deployments.resource_identifier_summaries(self.stack):
            if summary.get('ResourceType') and summary.get('ResourceIdentifiers'):
                ret[summary['ResourceType']] = [x.split(',') for x in summary['ResourceIdentifiers']]
        return ret

    async def ask_for_resource_identifier(self, resource_identifiers: ResourceIdentifiers,
                                          chg: ImportableResource) -> Optional[Dict[str, str]]:
        """
        Identifier properties of one resource, confirmed or entered by the user.

        Returns:
            {property: value}, or None to skip the resource
        """
        resource_name = self.describe_resource(chg.logical_id)

        resource_type = chg.resource_diff.new_resource_type
        if resource_type is None or resource_type not in resource_identifiers:
            await self.io_helper.warn(f"{resource_name}: unsupported resource type {resource_type}, skipping import.")
            return None

        id_prop_sets = resource_identifiers[resource_type]

        # Only literal strings can be offered as identifiers
        resource_props = {
            k: v for k, v in (chg.resource_definition.get('Properties') or {}).items()
            if isinstance(v, str)
        }

        # Offer every identifier set the template already fills in
        satisfied_prop_sets = [ps for ps in id_prop_sets if all(resource_props.get(p) for p in ps)]
        for satisfied_prop_set in satisfied_prop_sets:
            candidate_props = {p: resource_props[p] for p in satisfied_prop_set}
            display_candidate_props = fmtdict(candidate_props)

            import_the_resource = await self.io_helper.request_response(
                f"{resource_name} ({resource_type}): import with {display_candidate_props}",
                True,
                IO.IMPORT_CONFIRM_IDENTIFIER,
                {
                    'resource': {
                        'type': resource_type,
                        'props': candidate_props,
                        'stringifiedProps': display_candidate_props,
                    },
                },
            )
            if import_the_resource:
                return candidate_props

        # Declined every complete set, don't ask for the properties one by one
        if satisfied_prop_sets:
            await self.io_helper.info(f"Skipping import of {resource_name}")
            return None

        prefix = f"{resource_name} ({resource_type})"
        if len(id_prop_sets) > 1:
            alternatives = ', '.join('+'.join(x) for x in id_prop_sets)
            await self.io_helper.info(f"{prefix}: enter one of {alternatives} to import (leave all empty to skip)")

        # An empty answer moves on to the next identifier set
        for id_props in id_prop_sets:
            answers: Dict[str, str] = {}
            for id_prop in id_props:
                default_value = resource_props.get(id_prop, '')

                response = await self.io_helper.request_response(
                    f"{prefix}: enter {id_prop}",
                    default_value,
                    IO.IMPORT_ENTER_PROPERTY,
                    {
                        'resource': {
                            'name': resource_name,
                            'type': resource_type,
                            'idProp': id_prop,
                        },
                        'responseDescription': None if default_value else 'empty to skip',
                    },
                )

                if not response:
                    break

                answers[id_prop] = response
                # Offer the answer again for the same property in the next set
                resource_props[id_prop] = response

            if len(answers) == len(id_props):
                return answers

        await self.io_helper.info(f"Skipping import of {resource_name}")
        return None

    def make_resources_to_import(self, import_map: ImportMap) -> List[Dict[str, Any]]:
        """The ResourcesToImport argument of CreateChangeSet"""
        ret = []
        for res in import_map.import_resources:
            resource_type = res.resource_diff.new_resource_type
            if resource_type is None:
                raise UnsupportedResourceType(f"{res.logical_id}: resource has no type, it cannot be imported")
            ret.append({
                'LogicalResourceId': res.logical_id,
                'ResourceType': resource_type,
                'ResourceIdentifier': import_map.resource_map[res.logical_id],
            })
        return ret

    def describe_resource(self, logical_id: str) -> str:
        return self.stack.resource_path(logical_id)


def fmtdict(xs: Dict[str, Any]) -> str:
    return ', '.join(f"{k}={v}" for k, v in xs.items())


def add_default_deletion_policy(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Imported resources must have a DeletionPolicy; default to Retain.
    """
    if resource.get('DeletionPolicy'):
        return resource

    ret = dict(resource)
    ret['DeletionPolicy'] = 'Retain'
    return ret


def remove_non_import_resources(stack: StackArtifact) -> Dict[str, Any]:
    """
    The stack's template without CDKMetadata and Outputs, which an
    IMPORT change set does not accept.
    """
    template = copy.deepcopy(stack.template)
    (template.get('Resources') or {}).pop('CDKMetadata', None)
    template.pop('Outputs', None)
    return template
