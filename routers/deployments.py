from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from CFDeployments import (
    DeploymentMethod,
    Deployments,
    DeployStackOptions,
    DestroyStackOptions,
    HotswapMode,
    IoHelper,
    RollbackStackOptions,
    SdkProvider,
    StackArtifact,
    StackExistsOptions,
    ToolkitError,
    load_settings,
)
from CFDeployments.account_cache import default_account_cache
from CFDeployments.config import DeploymentSettings
from CFDeployments.deploymentModal.websocket_handler import WebSocketIoHost, deployment_ws_manager
from CFDeployments.errors import (
    BootstrapVersionMismatch,
    InvalidConfiguration,
    MissingParameterValue,
    UnsupportedAssetPackaging,
    UnsupportedResourceType,
)
from CFDeployments.resourceImport import ImportDeploymentOptions, ResourceImporter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments")

# Errors caused by the request rather than by AWS
VALIDATION_ERRORS = (
    BootstrapVersionMismatch,
    InvalidConfiguration,
    MissingParameterValue,
    UnsupportedAssetPackaging,
    UnsupportedResourceType,
)


class EnvironmentModel(BaseModel):
    account: str = 'unknown-account'
    region: str = 'unknown-region'


class StackModel(BaseModel):
    stack_name: str
    template: Dict[str, Any]
    environment: EnvironmentModel = Field(default_factory=EnvironmentModel)
    assets: List[Dict[str, Any]] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    requires_bootstrap_stack_version: Optional[int] = None
    bootstrap_stack_version_ssm_parameter: Optional[str] = None
    cloudformation_execution_role_arn: Optional[str] = None
    assume_role_arn: Optional[str] = None
    assume_role_external_id: Optional[str] = None
    lookup_role_arn: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    termination_protection: bool = False
    notification_arns: List[str] = Field(default_factory=list)
    assembly_directory: str = '.'
    stack_template_asset_object_url: Optional[str] = None
    display_name: str = ''

    def to_artifact(self) -> StackArtifact:
        return StackArtifact.from_dict(self.model_dump())


class DeployRequest(BaseModel):
    stack: StackModel
    role_arn: Optional[str] = None
    parameters: Dict[str, Optional[str]] = Field(default_factory=dict)
    use_previous_parameters: bool = True
    method: str = 'change-set'  # 'change-set' or 'direct'
    change_set_name: Optional[str] = None
    execute: bool = True
    import_existing_resources: bool = False
    rollback: bool = True
    hotswap: str = 'full-deployment'  # 'full-deployment', 'fall-back' or 'hotswap-only'
    force: bool = False
    reuse_assets: List[str] = Field(default_factory=list)
    asset_parallelism: Optional[bool] = None
    notification_arns: Optional[List[str]] = None
    recover: bool = False  # Roll back paused stacks / re-enable rollback automatically


class RollbackRequest(BaseModel):
    stack: StackModel
    role_arn: Optional[str] = None
    orphan_failed_resources: bool = False  # --force
    orphan_logical_ids: Optional[List[str]] = None  # --orphan
    validate_bootstrap_stack_version: bool = True


class DestroyRequest(BaseModel):
    stack: StackModel
    role_arn: Optional[str] = None


class DiscoverImportRequest(BaseModel):
    stack: StackModel
    allow_non_additions: bool = False


class ImportRequest(BaseModel):
    stack: StackModel
    resource_map: Dict[str, Dict[str, str]] = Field(default_factory=dict)  # logicalId -> identifier properties
    resources_to_import: Optional[List[Dict[str, Any]]] = None  # Import into a new stack as-is
    allow_non_additions: bool = False
    role_arn: Optional[str] = None


_sdk_provider: Optional[SdkProvider] = None


def get_settings() -> DeploymentSettings:
    return load_settings()


def get_sdk_provider(settings: DeploymentSettings = Depends(get_settings)) -> SdkProvider:
    """One SdkProvider per process so the account lookups are shared"""
    global _sdk_provider
    if _sdk_provider is None:
        _sdk_provider = SdkProvider(default_region=settings.region, account_cache=default_account_cache(settings))
    return _sdk_provider


def make_deployments(sdk_provider: SdkProvider, settings: DeploymentSettings, stack_name: str, action: str) -> Deployments:
    """Coordinator for one request, streaming its messages to the stack's WebSocket subscribers"""
    io_helper = IoHelper(WebSocketIoHost(deployment_ws_manager, stack_name), action)
    return Deployments(sdk_provider, io_helper, settings)


def to_http_exception(e: ToolkitError) -> HTTPException:
    if isinstance(e, VALIDATION_ERRORS):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@router.get('/health')
def get_health():
    return {"status": "ok"}


@router.post('/deploy')
async def deploy(request: DeployRequest,
                 sdk_provider: SdkProvider = Depends(get_sdk_provider),
                 settings: DeploymentSettings = Depends(get_settings)):
    """
    Deploy a stack.

    Args:
        request: DeployRequest with the stack artifact and deployment options

    Returns:
        Result type, whether anything changed, stack ARN and outputs
    """
    try:
        stack = request.stack.to_artifact()
        if request.method == 'direct':
            method = DeploymentMethod.direct()
        else:
            method = DeploymentMethod.change_set(
                change_set_name=request.change_set_name,
                execute=request.execute,
                import_existing_resources=request.import_existing_resources,
            )
        options = DeployStackOptions(
            stack=stack,
            role_arn=request.role_arn,
            notification_arns=request.notification_arns,
            reuse_assets=request.reuse_assets,
            deployment_method=method,
            force_deployment=request.force,
            parameters=request.parameters,
            use_previous_parameters=request.use_previous_parameters,
            rollback=request.rollback,
            hotswap=HotswapMode(request.hotswap),
            asset_parallelism=request.asset_parallelism,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    deployments = make_deployments(sdk_provider, settings, stack.stack_name, 'deploy')
    try:
        if request.recover:
            result = await deployments.deploy_with_recovery(options, force_rollback=request.force)
        else:
            result = await deployments.deploy_stack(options)
    except ToolkitError as e:
        logger.error("Deployment of %s failed: %s", stack.stack_name, e)
        raise to_http_exception(e)

    response = {"stackName": stack.stack_name, "type": result.type}
    if result.type == 'did-deploy-stack':
        response.update({"noOp": result.no_op, "stackArn": result.stack_arn, "outputs": result.outputs})
    elif result.type == 'failpaused-need-rollback-first':
        response.update({"reason": result.reason, "status": result.status})
    return response


@router.post('/rollback')
async def rollback(request: RollbackRequest,
                   sdk_provider: SdkProvider = Depends(get_sdk_provider),
                   settings: DeploymentSettings = Depends(get_settings)):
    stack = request.stack.to_artifact()
    deployments = make_deployments(sdk_provider, settings, stack.stack_name, 'rollback')
    try:
        result = await deployments.rollback_stack(RollbackStackOptions(
            stack=stack,
            role_arn=request.role_arn,
            orphan_failed_resources=request.orphan_failed_resources,
            orphan_logical_ids=request.orphan_logical_ids,
            validate_bootstrap_stack_version=request.validate_bootstrap_stack_version,
        ))
    except ToolkitError as e:
        logger.error("Rollback of %s failed: %s", stack.stack_name, e)
        raise to_http_exception(e)

    return {
        "stackName": stack.stack_name,
        "stackArn": result.stack_arn,
        "success": result.success,
        "notInRollbackableState": result.not_in_rollbackable_state,
    }


@router.post('/destroy')
async def destroy(request: DestroyRequest,
                  sdk_provider: SdkProvider = Depends(get_sdk_provider),
                  settings: DeploymentSettings = Depends(get_settings)):
    stack = request.stack.to_artifact()
    deployments = make_deployments(sdk_provider, settings, stack.stack_name, 'destroy')
    try:
        await deployments.destroy_stack(DestroyStackOptions(stack=stack, role_arn=request.role_arn))
    except ToolkitError as e:
        logger.error("Destroy of %s failed: %s", stack.stack_name, e)
        raise to_http_exception(e)
    return {"stackName": stack.stack_name, "deleted": True}


@router.get('/exists/{stack_name}')
async def exists(stack_name: str, account: str = 'unknown-account', region: str = 'unknown-region',
                 sdk_provider: SdkProvider = Depends(get_sdk_provider),
                 settings: DeploymentSettings = Depends(get_settings)):
    stack = StackModel(stack_name=stack_name, template={}, environment=EnvironmentModel(account=account, region=region)).to_artifact()
    deployments = make_deployments(sdk_provider, settings, stack_name, 'deploy')
    try:
        found = await deployments.stack_exists(StackExistsOptions(stack=stack, try_lookup_role=True))
    except ToolkitError as e:
        raise to_http_exception(e)
    return {"stackName": stack_name, "exists": found}


@router.post('/import/discover')
async def discover_importable(request: DiscoverImportRequest,
                              sdk_provider: SdkProvider = Depends(get_sdk_provider),
                              settings: DeploymentSettings = Depends(get_settings)):
    """
    List the resources of the template that are not deployed yet and can be imported.
    """
    stack = request.stack.to_artifact()
    deployments = make_deployments(sdk_provider, settings, stack.stack_name, 'import')
    importer = ResourceImporter(stack, deployments, deployments.io_helper)
    try:
        discovered = await importer.discover_importable_resources(request.allow_non_additions)
    except ToolkitError as e:
        raise to_http_exception(e)

    return {
        "stackName": stack.stack_name,
        "hasNonAdditions": discovered.has_non_additions,
        "additions": [
            {
                "logicalId": resource.logical_id,
                "resourceType": resource.resource_diff.new_resource_type,
                "path": importer.describe_resource(resource.logical_id),
            }
            for resource in discovered.additions
        ],
    }


@router.post('/import')
async def import_resources(request: ImportRequest,
                           sdk_provider: SdkProvider = Depends(get_sdk_provider),
                           settings: DeploymentSettings = Depends(get_settings)):
    """
    Import existing resources into a stack.

    Either resource_map (identifiers of resources the template adds to the
    deployed stack) or resources_to_import (create a new stack from existing
    resources) must be given.
    """
    stack = request.stack.to_artifact()
    deployments = make_deployments(sdk_provider, settings, stack.stack_name, 'import')
    importer = ResourceImporter(stack, deployments, deployments.io_helper)

    options = ImportDeploymentOptions(role_arn=request.role_arn)

    try:
        if request.resources_to_import is not None:
            await importer.import_resources_from_migrate(request.resources_to_import, options)
            imported = [r.get('LogicalResourceId') for r in request.resources_to_import]
        else:
            discovered = await importer.discover_importable_resources(request.allow_non_additions)
            import_map = await importer.resource_identifiers_from_mapping(discovered.additions, request.resource_map)
            if not import_map.import_resources:
                raise HTTPException(status_code=400, detail="No resources selected for import")
            await importer.import_resources_from_map(import_map, options)
            imported = list(import_map.resource_map.keys())
    except ToolkitError as e:
        logger.error("Import into %s failed: %s", stack.stack_name, e)
        raise to_http_exception(e)

    return {"stackName": stack.stack_name, "imported": imported}


@router.websocket("/track/{stack_name}")
async def track_deployment(websocket: WebSocket, stack_name: str):
    """
    Stream the messages of operations on a stack.

    Every message of a deploy, rollback, destroy or import of the stack is
    sent as JSON:
        {
            "type": "resource_update" | "stack_complete" | "error" | "message" | ...,
            "level": "info",
            "code": "CDK_TOOLKIT_I5502",
            "message": "...",
            "timestamp": "2025-11-13T10:30:45"
        }
    """
    await deployment_ws_manager.connect(websocket, stack_name)

    try:
        # Keep the connection open; clients may send pings
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        deployment_ws_manager.disconnect(websocket, stack_name)
