"""The source controller module.

This module resolves the GitRepository and OCIRepository objects referenced by
KclInstances into revisions and local artifact directories.
"""

from .artifact import SourceArtifact
from .fetcher import ArtifactFetcher, FetcherConfig
from .watcher import SourceWatcher, reconcile_reason

__all__ = [
    "ArtifactFetcher",
    "FetcherConfig",
    "SourceArtifact",
    "SourceWatcher",
    "reconcile_reason",
]
