"""Ephemeral multi-architecture builds on Hetzner Cloud with snapshot caching."""

from .builder import BuildCoordinator, BuildReport, OrchestrationContext
from .config import BuildConfig
from .errors import HcloudBuildError
from .models import Architecture, ArtifactRecord, BuildRun, BuildTarget, ManagedInstance, SnapshotRecord

__all__ = [
    "Architecture",
    "ArtifactRecord",
    "BuildConfig",
    "BuildCoordinator",
    "BuildReport",
    "BuildRun",
    "BuildTarget",
    "HcloudBuildError",
    "ManagedInstance",
    "OrchestrationContext",
    "SnapshotRecord",
]

__version__ = "0.1.0"
