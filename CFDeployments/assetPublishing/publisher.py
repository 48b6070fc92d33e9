"""
Asset Publisher

Builds and uploads the entries of an asset manifest: files and zipped
directories go to S3, container images are built with docker and pushed
to ECR.
"""
import asyncio
import base64
import logging
import os
import subprocess
import tempfile
import zipfile
from typing import Dict, List, Optional, Set

from botocore.exceptions import ClientError

from ..errors import AssetPublishingError, ToolkitError, UnsupportedAssetPackaging, format_error_message
from ..io_host import IO
from ..sdk import Sdk, SdkProvider, aws_call
from ..stack_artifact import Environment
from .manifest_builder import AssetManifest

logger = logging.getLogger(__name__)

# Failures of a single entry; recorded on the publisher instead of aborting the others
ENTRY_ERRORS = (ClientError, ToolkitError, OSError)

# Fixed timestamp so identical directories produce identical archives
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


class AssetProgressListener:
    """
    Forwards publishing events to the IoHost, prefixed with the stack name.
    """

    def __init__(self, io_helper, prefix: str = ''):
        self.io_helper = io_helper
        self.prefix = prefix

    async def on_event(self, event_type: str, message: str):
        level = {'fail': 'error', 'debug': 'debug'}.get(event_type, 'info')
        await self.io_helper.notify(level, f"{self.prefix}{event_type}: {message}", IO.ASSET_PROGRESS, {
            'type': 'asset_progress',
            'event': event_type,
            'message': message,
        })


def zip_directory(directory: str, output_file: str):
    """
    Zip a directory with sorted entries and fixed timestamps.

    Args:
        directory: Directory to archive (its contents become the archive root)
        output_file: Path of the zip file to write
    """
    with zipfile.ZipFile(output_file, 'w', compression=zipfile.ZIP_DEFLATED) as zout:
        for root, dirs, files in os.walk(directory):
            dirs.sort()
            for name in sorted(files):
                full_path = os.path.join(root, name)
                arcname = os.path.relpath(full_path, directory).replace(os.sep, '/')
                info = zipfile.ZipInfo(arcname, date_time=ZIP_DATE_TIME)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = (os.stat(full_path).st_mode & 0xFFFF) << 16
                with open(full_path, 'rb') as f:
                    zout.writestr(info, f.read())


class AssetPublishing:
    """
    One publishing session for one manifest.

    Remembers what was built and published, and which entries failed, for
    as long as the session lives.

    Args:
        manifest: The AssetManifest to publish
        sdk_provider: SdkProvider used to reach the destinations
        environment: Resolved environment of the stack owning the assets
        progress_listener: Receives start/build/upload/success/fail events
    """

    def __init__(self, manifest: AssetManifest, sdk_provider: SdkProvider, environment: Environment,
                 progress_listener: Optional[AssetProgressListener] = None):
        self.manifest = manifest
        self.sdk_provider = sdk_provider
        self.environment = environment
        self.progress_listener = progress_listener

        self.failures: List[Dict] = []
        self._built: Dict[str, str] = {}
        self._published: Set[str] = set()
        self._docker_logins: Set[str] = set()
        self._build_dir: Optional[str] = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    async def publish(self, parallel: bool = True, allow_cross_account: bool = True, force: bool = False):
        """Build and publish every entry of the manifest"""
        await self._emit('start', f"Publishing {len(self.manifest.entries)} asset(s)")
        if parallel:
            await asyncio.gather(*(
                self.publish_entry(entry, allow_cross_account=allow_cross_account, force=force)
                for entry in self.manifest.entries
            ))
        else:
            for entry in self.manifest.entries:
                await self.publish_entry(entry, allow_cross_account=allow_cross_account, force=force)

    async def build_entry(self, entry) -> bool:
        """
        Build an entry locally (zip a directory, docker build an image).

        Returns:
            True on success; on failure the error is recorded in self.failures
        """
        if entry.key in self._built:
            return True

        try:
            await self._emit('build', f"Building {entry.display_name(False)}")
            if entry.type == 'file':
                artifact = await asyncio.to_thread(self._package_file, entry)
            elif entry.type == 'docker-image':
                artifact = await self._build_image(entry)
            else:
                raise UnsupportedAssetPackaging(f"Unsupported asset type: {entry.type}")
        except ENTRY_ERRORS as e:
            await self._fail(entry, e)
            return False

        self._built[entry.key] = artifact
        await self._emit('success', f"Built {entry.display_name(False)}")
        return True

    async def publish_entry(self, entry, allow_cross_account: bool = True, force: bool = False) -> bool:
        """
        Upload an entry to its destination, building it first if needed.

        Args:
            entry: FileManifestEntry or DockerImageManifestEntry
            allow_cross_account: Allow destinations owned by another account
            force: Upload even if the destination already has the asset

        Returns:
            True on success; on failure the error is recorded in self.failures
        """
        if entry.key in self._published and not force:
            return True

        try:
            if not force and await self._is_published(entry, allow_cross_account):
                await self._emit('found', f"Already published: {entry.display_name(True)}")
                self._published.add(entry.key)
                return True

            if not await self.build_entry(entry):
                return False

            await self._emit('upload', f"Publishing {entry.display_name(True)}")
            if entry.type == 'file':
                await self._upload_file(entry, allow_cross_account)
            else:
                await self._push_image(entry)
        except ENTRY_ERRORS as e:
            await self._fail(entry, e)
            return False

        self._published.add(entry.key)
        await self._emit('success', f"Published {entry.display_name(True)}")
        return True

    async def is_entry_published(self, entry) -> bool:
        return await self._is_published(entry, allow_cross_account=True)

    async def _is_published(self, entry, allow_cross_account: bool) -> bool:
        await self._emit('check', f"Check {entry.display_name(True)}")
        sdk = await self._destination_sdk(entry.destination)
        if entry.type == 'file':
            return await self._file_exists(sdk, entry, allow_cross_account)
        return await self._image_exists(sdk, entry)

    # ---- files ----

    def _package_file(self, entry) -> str:
        path = os.path.join(self.manifest.directory, entry.source['path'])
        packaging = entry.source.get('packaging', 'file')

        if packaging == 'zip':
            if not os.path.isdir(path):
                raise AssetPublishingError(f"Asset directory not found: {path}")
            archive = os.path.join(self._get_build_dir(), f"{entry.id}.zip")
            zip_directory(path, archive)
            return archive

        if packaging != 'file':
            raise UnsupportedAssetPackaging(f"Unsupported file packaging: {packaging}")
        if not os.path.isfile(path):
            raise AssetPublishingError(f"Asset file not found: {path}")
        return path

    def _get_build_dir(self) -> str:
        if self._build_dir is None:
            self._build_dir = tempfile.mkdtemp(prefix='cdk-assets-')
        return self._build_dir

    async def _file_exists(self, sdk: Sdk, entry, allow_cross_account: bool) -> bool:
        bucket = await self._replace(entry.destination['bucketName'])
        params = {'Bucket': bucket, 'Key': entry.destination['objectKey']}
        if not allow_cross_account:
            params['ExpectedBucketOwner'] = (await sdk.current_account())['accountId']

        try:
            await aws_call(sdk.s3().head_object, **params)
            return True
        except ClientError as e:
            code = str(e.response['Error']['Code'])
            if code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            if code in ('403', 'AccessDenied') and not allow_cross_account:
                raise AssetPublishingError(
                    f"Bucket named '{bucket}' exists, but not in account {params['ExpectedBucketOwner']}. Wrong account?"
                )
            raise

    async def _upload_file(self, entry, allow_cross_account: bool):
        sdk = await self._destination_sdk(entry.destination)
        bucket = await self._replace(entry.destination['bucketName'])
        key = entry.destination['objectKey']

        extra_args = {}
        if entry.source.get('packaging') == 'zip':
            extra_args['ContentType'] = 'application/zip'
        if not allow_cross_account:
            extra_args['ExpectedBucketOwner'] = (await sdk.current_account())['accountId']

        file_name = self._built[entry.key]
        await self._emit('upload', f"Upload s3://{bucket}/{key}")
        await asyncio.to_thread(sdk.s3().upload_file, file_name, bucket, key, ExtraArgs=extra_args or None)

    # ---- container images ----

    async def _build_image(self, entry) -> str:
        source = entry.source
        directory = os.path.join(self.manifest.directory, source['directory'])
        if not os.path.isdir(directory):
            raise AssetPublishingError(f"Docker build directory not found: {directory}")

        local_tag = f"cdkasset-{entry.id.lower()}"
        cmd = ['docker', 'build', '--tag', local_tag]
        for name, value in (source.get('dockerBuildArgs') or {}).items():
            cmd += ['--build-arg', f"{name}={value}"]
        if source.get('dockerBuildTarget'):
            cmd += ['--target', source['dockerBuildTarget']]
        if source.get('dockerFile'):
            cmd += ['--file', os.path.join(directory, source['dockerFile'])]
        if source.get('networkMode'):
            cmd += ['--network', source['networkMode']]
        if source.get('platform'):
            cmd += ['--platform', source['platform']]
        if source.get('dockerBuildSsh'):
            cmd += ['--ssh', source['dockerBuildSsh']]
        for output in source.get('dockerOutputs') or []:
            cmd += ['--output', output]
        cmd.append(directory)

        await self._docker(cmd)
        return local_tag

    async def _image_exists(self, sdk: Sdk, entry) -> bool:
        repository = await self._replace(entry.destination['repositoryName'])
        try:
            await aws_call(
                sdk.ecr().describe_images,
                repositoryName=repository,
                imageIds=[{'imageTag': entry.destination['imageTag']}],
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('ImageNotFoundException', 'RepositoryNotFoundException'):
                return False
            raise

    async def _push_image(self, entry):
        sdk = await self._destination_sdk(entry.destination)
        repository = await self._replace(entry.destination['repositoryName'])

        response = await aws_call(sdk.ecr().describe_repositories, repositoryNames=[repository])
        repositories = response.get('repositories') or []
        if not repositories:
            raise AssetPublishingError(f"No ECR repository named '{repository}'. Is this account bootstrapped?")
        image_uri = f"{repositories[0]['repositoryUri']}:{entry.destination['imageTag']}"

        await self._docker_login(sdk)
        await self._docker(['docker', 'tag', self._built[entry.key], image_uri])
        await self._docker(['docker', 'push', image_uri])

    async def _docker_login(self, sdk: Sdk):
        response = await aws_call(sdk.ecr().get_authorization_token)
        auth = response['authorizationData'][0]
        endpoint = auth['proxyEndpoint']
        if endpoint in self._docker_logins:
            return

        username, _, password = base64.b64decode(auth['authorizationToken']).decode('utf-8').partition(':')
        await self._docker(['docker', 'login', '--username', username, '--password-stdin', endpoint],
                           stdin=password.encode('utf-8'))
        self._docker_logins.add(endpoint)

    async def _docker(self, cmd: List[str], stdin: Optional[bytes] = None):
        logger.debug("Running docker command: %s", cmd[:2])
        try:
            await asyncio.to_thread(subprocess.run, cmd, input=stdin, capture_output=True, check=True)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b'').decode('utf-8', errors='replace').strip()
            raise AssetPublishingError(f"Docker process returned with error code {e.returncode}: {stderr}") from e

    # ---- helpers ----

    async def _destination_sdk(self, destination: Dict) -> Sdk:
        region = destination.get('region') or self.environment.region
        env = Environment(account=self.environment.account, region=region)
        role = await self._replace(destination.get('assumeRoleArn'))
        return await self.sdk_provider.for_environment(env, 'write', role, destination.get('assumeRoleExternalId'))

    async def _replace(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if '${AWS::Partition}' in value:
            base = await self.sdk_provider.base_credentials_account()
            value = value.replace('${AWS::Partition}', (base or {}).get('partition', 'aws'))
        return value \
            .replace('${AWS::AccountId}', self.environment.account) \
            .replace('${AWS::Region}', self.environment.region)

    async def _emit(self, event_type: str, message: str):
        if self.progress_listener is not None:
            await self.progress_listener.on_event(event_type, message)

    async def _fail(self, entry, error: Exception):
        self.failures.append({'entry': entry.display_name(True), 'error': error})
        await self._emit('fail', f"{entry.display_name(True)}: {format_error_message(error)}")


async def publish_assets(
    manifest: AssetManifest,
    sdk_provider: SdkProvider,
    environment: Environment,
    io_helper,
    parallel: bool = True,
    allow_cross_account: bool = True,
    force_publish: bool = False,
    stack_name: Optional[str] = None,
):
    """
    Publish every asset of a manifest in one go.

    Raises:
        AssetPublishingError: if any entry failed to build or upload
    """
    if not environment.is_resolved:
        raise ToolkitError(f"Cannot publish assets to an unresolved environment: {environment.name}")

    prefix = f"{stack_name}: " if stack_name else ''
    publisher = AssetPublishing(manifest, sdk_provider, environment, AssetProgressListener(io_helper, prefix))
    await publisher.publish(parallel=parallel, allow_cross_account=allow_cross_account, force=force_publish)
    if publisher.has_failures:
        raise AssetPublishingError('Failed to publish one or more assets. See the error messages above for more information.')
