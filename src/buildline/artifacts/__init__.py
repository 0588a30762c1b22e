"""Artifact manifest and canonical artifact directory collection."""

from buildline.artifacts.collector import ArtifactCollector
from buildline.artifacts.manifest import ArtifactManifest, DuplicateArtifactError, build_manifest

__all__ = [
    "ArtifactCollector",
    "ArtifactManifest",
    "DuplicateArtifactError",
    "build_manifest",
]
