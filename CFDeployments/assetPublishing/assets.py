"""
Stack asset preparation

Turns the asset metadata of a stack into manifest entries plus the
CloudFormation parameters that tell the template where the assets live.
"""
import json
import os
import re
from typing import Dict, List, Optional

from ..errors import InvalidConfiguration, ToolkitError, UnsupportedAssetPackaging
from ..stack_artifact import StackArtifact
from .manifest_builder import AssetManifestBuilder

# Separates the S3 prefix from the file name in asset key parameters
ASSET_PREFIX_SEPARATOR = '||'


async def add_metadata_assets_to_manifest(
    io_helper,
    stack: StackArtifact,
    asset_manifest: AssetManifestBuilder,
    env_resources,
    reuse: Optional[List[str]] = None,
) -> Dict[str, str]:
    """
    Add the stack's assets to the manifest.

    Args:
        io_helper: IoHelper for debug output
        stack: Stack whose 'assets' metadata is read
        asset_manifest: Builder receiving the entries
        env_resources: EnvironmentResources of the target environment
        reuse: Asset ids that are already published and must be skipped

    Returns:
        CloudFormation parameters carrying the asset coordinates
    """
    reuse = reuse or []
    if not stack.assets:
        return {}

    toolkit_info = await env_resources.lookup_toolkit()
    if not toolkit_info.found:
        raise ToolkitError(
            f"This stack uses assets, so the toolkit stack must be deployed to the environment "
            f"(Run \"cdk bootstrap {stack.environment.name}\")"
        )

    params: Dict[str, str] = {}
    for asset in stack.assets:
        if asset.get('id') in reuse:
            await io_helper.debug(f"Reusing asset {asset.get('id')}: {json.dumps(asset)}")
            continue

        await io_helper.debug(f"Preparing asset {asset.get('id')}: {json.dumps(asset)}")
        params.update(await _prepare_asset(io_helper, asset, asset_manifest, env_resources, toolkit_info))

    return params


async def _prepare_asset(io_helper, asset: Dict, asset_manifest: AssetManifestBuilder,
                         env_resources, toolkit_info) -> Dict[str, str]:
    packaging = asset.get('packaging')
    if packaging in ('zip', 'file'):
        return await prepare_file_asset(io_helper, asset, asset_manifest, toolkit_info, packaging)
    if packaging == 'container-image':
        return await prepare_docker_image_asset(asset, asset_manifest, env_resources)
    raise UnsupportedAssetPackaging(
        f"Unsupported packaging type: {packaging}. You might need to upgrade your toolkit to support this asset type."
    )


async def prepare_file_asset(io_helper, asset: Dict, asset_manifest: AssetManifestBuilder,
                             toolkit_info, packaging: str) -> Dict[str, str]:
    extension = '.zip' if packaging == 'zip' else os.path.splitext(asset['path'])[1]
    base_name = f"{asset['sourceHash']}{extension}"
    # assets/abcdef/abcdef.zip is redundant, use one component when id and hash agree
    s3_prefix = 'assets/' if asset['id'] == asset['sourceHash'] else f"assets/{asset['id']}/"
    key = f"{s3_prefix}{base_name}"

    await io_helper.debug(f"Storing asset {asset['path']} at s3://{toolkit_info.bucket_name}/{key}")

    asset_manifest.add_file_asset(asset['sourceHash'], {
        'path': asset['path'],
        'packaging': packaging,
    }, {
        'bucketName': toolkit_info.bucket_name,
        'objectKey': key,
    })

    return {
        asset['s3BucketParameter']: toolkit_info.bucket_name,
        asset['s3KeyParameter']: f"{s3_prefix}{ASSET_PREFIX_SEPARATOR}{base_name}",
        asset['artifactHashParameter']: asset['sourceHash'],
    }


async def prepare_docker_image_asset(asset: Dict, asset_manifest: AssetManifestBuilder, env_resources) -> Dict[str, str]:
    # Without an image name parameter the template hardcodes the image, so
    # repository and tag must be known up front
    if not asset.get('imageNameParameter') and (not asset.get('repositoryName') or not asset.get('imageTag')):
        raise InvalidConfiguration(
            'Invalid Docker image asset configuration: "repositoryName" and "imageTag" are required '
            'when "imageNameParameter" is left out'
        )

    repository_name = asset.get('repositoryName') or 'cdk/' + re.sub(r'[:/]', '-', asset['id']).lower()

    # The publisher will not create the repository
    repository = await env_resources.prepare_ecr_repository(repository_name)
    image_tag = asset.get('imageTag') or asset['sourceHash']

    asset_manifest.add_docker_image_asset(asset['sourceHash'], {
        'directory': asset['path'],
        'dockerBuildArgs': asset.get('buildArgs'),
        'dockerBuildSsh': asset.get('buildSsh'),
        'dockerBuildTarget': asset.get('target'),
        'dockerFile': asset.get('file'),
        'networkMode': asset.get('networkMode'),
        'platform': asset.get('platform'),
        'dockerOutputs': asset.get('outputs'),
    }, {
        'repositoryName': repository_name,
        'imageTag': image_tag,
    })

    if not asset.get('imageNameParameter'):
        return {}
    return {asset['imageNameParameter']: f"{repository['repositoryUri']}:{image_tag}"}
