"""
softupdate - Service Layer

This package contains the update workflow components.
"""

from softupdate.services.artifact_sync import ArtifactSynchronizer, SyncReport
from softupdate.services.backup_manager import BackupManager, BackupError
from softupdate.services.config_store import ConfigStore
from softupdate.services.distribution_client import DistributionClient, TransportError
from softupdate.services.manifest import Manifest, ManifestEntry, ManifestError, ManifestStore
from softupdate.services.manifest_differ import ArtifactDiff, ManifestDiffer
from softupdate.services.rollback_manager import RollbackManager, RestoreError
from softupdate.services.schema_migrator import MigrationResult, SchemaMigrator
from softupdate.services.session import Snapshot, UpdateSession, UpgradeState
from softupdate.services.update_orchestrator import UpdateOrchestrator, UpdateResult, build_orchestrator
from softupdate.services.version_resolver import MetadataError, ReleaseTimestampError, VersionResolver

__all__ = [
    "ArtifactSynchronizer",
    "SyncReport",
    "BackupManager",
    "BackupError",
    "ConfigStore",
    "DistributionClient",
    "TransportError",
    "Manifest",
    "ManifestEntry",
    "ManifestError",
    "ManifestStore",
    "ArtifactDiff",
    "ManifestDiffer",
    "RollbackManager",
    "RestoreError",
    "MigrationResult",
    "SchemaMigrator",
    "Snapshot",
    "UpdateSession",
    "UpgradeState",
    "UpdateOrchestrator",
    "UpdateResult",
    "build_orchestrator",
    "MetadataError",
    "ReleaseTimestampError",
    "VersionResolver",
]
