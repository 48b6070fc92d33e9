import zipfile

import pytest

from CFDeployments.assetPublishing import AssetManifestBuilder
from CFDeployments.assetPublishing.publisher import zip_directory
from CFDeployments.errors import ToolkitError
from CFDeployments.stack_artifact import Environment
from conftest import ACCOUNT, REGION, client_error, make_stack

ENV = Environment(account=ACCOUNT, region=REGION)


def file_manifest(directory, path='asset.txt', packaging='file'):
    builder = AssetManifestBuilder()
    builder.add_file_asset('abc', {'path': path, 'packaging': packaging}, {
        'bucketName': 'assets-${AWS::AccountId}',
        'objectKey': 'assets/abc.txt',
    })
    return builder.to_manifest(str(directory))


async def test_same_manifest_shares_publisher(deployments, tmp_path):
    manifest = file_manifest(tmp_path)

    first = await deployments.cached_publisher(manifest, ENV, 'MyStack')
    second = await deployments.cached_publisher(manifest, ENV, 'MyStack')

    assert first is second


async def test_other_manifest_gets_own_publisher(deployments, tmp_path):
    first = await deployments.cached_publisher(file_manifest(tmp_path), ENV)
    other = file_manifest(tmp_path)

    assert await deployments.cached_publisher(other, ENV) is not first


async def test_published_asset_is_not_uploaded_again(deployments, sdk, tmp_path):
    (tmp_path / 'asset.txt').write_text('hello')
    manifest = file_manifest(tmp_path)

    await deployments.build_and_publish_stack_assets(make_stack(), manifest)

    sdk.s3_client.head_object.assert_called_once_with(Bucket=f"assets-{ACCOUNT}", Key='assets/abc.txt')
    sdk.s3_client.upload_file.assert_not_called()


async def test_missing_asset_is_uploaded(deployments, sdk, tmp_path):
    (tmp_path / 'asset.txt').write_text('hello')
    sdk.s3_client.head_object.side_effect = client_error('404', 'Not Found', 'HeadObject')
    manifest = file_manifest(tmp_path)

    await deployments.build_and_publish_stack_assets(make_stack(), manifest, parallel=False)

    sdk.s3_client.upload_file.assert_called_once_with(
        str(tmp_path / 'asset.txt'), f"assets-{ACCOUNT}", 'assets/abc.txt', ExtraArgs=None,
    )
    entry = manifest.entries[0]
    assert await deployments.is_single_asset_published(manifest, entry, make_stack()) is False


async def test_build_failure_is_reported(deployments, tmp_path, io_host):
    manifest = file_manifest(tmp_path, path='does-not-exist.txt')

    with pytest.raises(ToolkitError, match='Failed to build asset abc'):
        await deployments.build_and_publish_stack_assets(make_stack(), manifest)

    assert any('Asset file not found' in text for text in io_host.texts('error'))


async def test_zip_asset_is_archived_before_upload(deployments, sdk, tmp_path):
    source = tmp_path / 'lambda'
    source.mkdir()
    (source / 'index.py').write_text('def handler(event, context):\n    return event\n')
    sdk.s3_client.head_object.side_effect = client_error('NoSuchKey', 'Not Found', 'HeadObject')
    manifest = file_manifest(tmp_path, path='lambda', packaging='zip')

    await deployments.build_and_publish_stack_assets(make_stack(), manifest)

    args, kwargs = sdk.s3_client.upload_file.call_args
    assert args[0].endswith('abc.zip')
    assert kwargs['ExtraArgs'] == {'ContentType': 'application/zip'}


def test_zip_directory_is_reproducible(tmp_path):
    source = tmp_path / 'src'
    (source / 'sub').mkdir(parents=True)
    (source / 'b.txt').write_text('b')
    (source / 'sub' / 'a.txt').write_text('a')

    zip_directory(str(source), str(tmp_path / 'one.zip'))
    zip_directory(str(source), str(tmp_path / 'two.zip'))

    assert (tmp_path / 'one.zip').read_bytes() == (tmp_path / 'two.zip').read_bytes()
    with zipfile.ZipFile(tmp_path / 'one.zip') as archive:
        assert archive.namelist() == ['b.txt', 'sub/a.txt']
