"""
Asset Publishing Module

Builds asset manifests from stack metadata and publishes them to S3 and ECR.
"""

from .manifest_builder import AssetManifest, AssetManifestBuilder, DockerImageManifestEntry, FileManifestEntry
from .assets import add_metadata_assets_to_manifest
from .publisher import AssetProgressListener, AssetPublishing, publish_assets

__all__ = [
    'AssetManifest',
    'AssetManifestBuilder',
    'FileManifestEntry',
    'DockerImageManifestEntry',
    'add_metadata_assets_to_manifest',
    'AssetProgressListener',
    'AssetPublishing',
    'publish_assets',
]
