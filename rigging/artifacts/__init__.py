"""Artifact collection and the queryable artifact repository."""
from rigging.artifacts.collector import ARTIFACT_TYPES, MINIMAL_TYPES, ArtifactCollector
from rigging.artifacts.manager import ArtifactManager
from rigging.artifacts.repository import ArtifactRepository

__all__ = [
    "ARTIFACT_TYPES",
    "MINIMAL_TYPES",
    "ArtifactCollector",
    "ArtifactManager",
    "ArtifactRepository",
]
