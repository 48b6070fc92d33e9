"""
Asset Manifest

An asset manifest lists the file and container image assets a deployment
needs uploaded before the template is submitted. Entries are keyed by
their content hash and carry one destination each.
"""
import copy
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

MANIFEST_VERSION = '39.0.0'
MANIFEST_FILENAME = 'assets.json'

# Destination id used for every entry produced by the builder
CURRENT_DESTINATION = 'current_account-current_region'


@dataclass
class FileManifestEntry:
    """
    A file or zipped directory to upload to S3.

    Attributes:
        id: Asset id (content hash)
        destination_id: Key of the destination inside the manifest
        source: {'path': ..., 'packaging': 'file' | 'zip'}
        destination: {'bucketName': ..., 'objectKey': ..., optional 'region'/'assumeRoleArn'}
    """
    id: str
    destination_id: str
    source: Dict
    destination: Dict
    type: str = field(default='file', init=False)

    @property
    def key(self) -> str:
        return f"{self.id}:{self.destination_id}"

    def display_name(self, with_destination: bool = False) -> str:
        if with_destination:
            return f"{self.id}:{self.destination_id}"
        return self.id


@dataclass
class DockerImageManifestEntry:
    """
    A container image to build and push to ECR.

    Attributes:
        source: {'directory': ..., 'dockerFile', 'dockerBuildArgs', 'dockerBuildTarget', ...}
        destination: {'repositoryName': ..., 'imageTag': ...}
    """
    id: str
    destination_id: str
    source: Dict
    destination: Dict
    type: str = field(default='docker-image', init=False)

    @property
    def key(self) -> str:
        return f"{self.id}:{self.destination_id}"

    def display_name(self, with_destination: bool = False) -> str:
        if with_destination:
            return f"{self.id}:{self.destination_id}"
        return self.id


class AssetManifest:
    """
    A loaded asset manifest.

    Args:
        directory: Directory that asset source paths are relative to
        manifest: Manifest contents in the cdk-assets JSON form
    """

    def __init__(self, directory: str, manifest: Dict):
        self.directory = directory
        self.manifest = manifest
        self.entries: List = self._make_entries()

    @classmethod
    def from_file(cls, file_name: str) -> 'AssetManifest':
        with open(file_name, 'r') as f:
            manifest = json.load(f)
        return cls(os.path.dirname(os.path.abspath(file_name)), manifest)

    def _make_entries(self) -> List:
        entries = []
        for asset_id, asset in (self.manifest.get('files') or {}).items():
            for dest_id, destination in (asset.get('destinations') or {}).items():
                entries.append(FileManifestEntry(asset_id, dest_id, asset['source'], destination))
        for asset_id, asset in (self.manifest.get('dockerImages') or {}).items():
            for dest_id, destination in (asset.get('destinations') or {}).items():
                entries.append(DockerImageManifestEntry(asset_id, dest_id, asset['source'], destination))
        return entries

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def save(self, file_name: Optional[str] = None) -> str:
        """
        Write the manifest as JSON.

        Returns:
            The path written to
        """
        file_name = file_name or os.path.join(self.directory, MANIFEST_FILENAME)
        with open(file_name, 'w') as f:
            json.dump(self.manifest, f, indent=2)
        return file_name


class AssetManifestBuilder:
    """Collects assets one by one and produces an AssetManifest"""

    def __init__(self):
        self.manifest: Dict = {
            'version': MANIFEST_VERSION,
            'files': {},
            'dockerImages': {},
        }

    def add_file_asset(self, asset_id: str, source: Dict, destination: Dict):
        self.manifest['files'][asset_id] = {
            'source': source,
            'destinations': {CURRENT_DESTINATION: destination},
        }

    def add_docker_image_asset(self, asset_id: str, source: Dict, destination: Dict):
        # Leave out build options that were not set
        source = {k: v for k, v in source.items() if v is not None}
        self.manifest['dockerImages'][asset_id] = {
            'source': source,
            'destinations': {CURRENT_DESTINATION: destination},
        }

    def to_manifest(self, directory: str) -> AssetManifest:
        return AssetManifest(directory, copy.deepcopy(self.manifest))
