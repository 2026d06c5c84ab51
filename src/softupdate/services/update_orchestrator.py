"""
Update Orchestrator - Check and upgrade entry points

Coordinates the update workflow:
- Checking the distribution server for a newer release
- Snapshotting the installation before anything is modified
- Replacing the manifest and syncing changed artifacts
- Migrating the database schema for the new release
- Restoring the snapshot when any step after the backup fails

Public operations never raise; they report an UpdateResult (or a plain
dict for checks) carrying a code that explains the outcome.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from softupdate.config import Settings, get_settings
from softupdate.database import get_db_session
from softupdate.logging_config import configure_logging
from softupdate.models.update_config import (
    LAST_SOFTWARE_UPDATE,
    SERVICES_VERSION,
    SOFTWARE_UPDATE_AVAILABLE,
    UpdateCheck,
)
from softupdate.services.artifact_sync import ArtifactSynchronizer, LIB_FOLDER
from softupdate.services.backup_manager import BackupManager
from softupdate.services.config_store import ConfigStore
from softupdate.services.distribution_client import DistributionClient
from softupdate.services.manifest import ManifestError, ManifestStore
from softupdate.services.manifest_differ import ManifestDiffer
from softupdate.services.rollback_manager import RestoreError, RollbackManager
from softupdate.services.schema_migrator import MigrationResult, SchemaMigrator
from softupdate.services.session import UpdateSession, UpgradeState
from softupdate.services.version_resolver import VersionResolver

logger = structlog.get_logger(__name__)

# Result codes
UPGRADE_COMPLETED = "UPGRADE_COMPLETED"
NO_UPDATE_AVAILABLE = "NO_UPDATE_AVAILABLE"
VERSION_CHECK_FAILED = "VERSION_CHECK_FAILED"
BACKUP_FAILED = "BACKUP_FAILED"
UPGRADE_ROLLED_BACK = "UPGRADE_ROLLED_BACK"
ROLLBACK_FAILED = "ROLLBACK_FAILED"
SQL_EXECUTION_FAILURE = "SQL_EXECUTION_FAILURE"

CHECK_SOURCES = ("manual", "scheduled", "startup")


@dataclass
class UpdateResult:
    """Outcome of an upgrade"""

    success: bool
    code: str
    message: str
    state: UpgradeState
    from_version: Optional[str] = None
    to_version: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    history: List[UpgradeState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["state"] = self.state.value
        result["history"] = [s.value for s in self.history]
        return result


class UpdateOrchestrator:
    """
    Sequences version check, backup, sync, finalization and migration

    Holds only collaborators; each operation builds its own UpdateSession.
    Calls to upgrade() must be serialised by the caller.
    """

    def __init__(
        self,
        version_resolver: VersionResolver,
        manifest_store: ManifestStore,
        synchronizer: ArtifactSynchronizer,
        backup_manager: BackupManager,
        rollback_manager: RollbackManager,
        schema_migrator: SchemaMigrator,
        config_store: ConfigStore,
        component_names: Iterable[str] = (),
        session_factory: Optional[Callable[[], ContextManager[Session]]] = None,
    ):
        self.version_resolver = version_resolver
        self.manifest_store = manifest_store
        self.synchronizer = synchronizer
        self.backup_manager = backup_manager
        self.rollback_manager = rollback_manager
        self.schema_migrator = schema_migrator
        self.config_store = config_store
        self.component_names = tuple(component_names)
        self._session_factory = session_factory or get_db_session

    def has_update(self) -> bool:
        """True if the released version differs from the installed one"""
        return self.version_resolver.has_update(UpdateSession())

    def check_for_update(self, source: str = "manual") -> Dict[str, Any]:
        """
        Check for an update and persist the outcome

        Args:
            source: Source of check ("manual", "scheduled", "startup")

        Returns:
            Dict with update_available, current_version, latest_version
            and release_timestamp
        """
        session = UpdateSession()
        update_available = self.version_resolver.has_update(session)

        release_timestamp = None
        if session.release_timestamp is not None:
            try:
                release_timestamp = self.version_resolver.get_latest_version_release_timestamp(session)
            except ValueError as e:
                logger.warning("release_timestamp_invalid", error=str(e))

        result = {
            "update_available": update_available,
            "current_version": session.current_version,
            "latest_version": session.latest_version,
            "release_timestamp": release_timestamp.isoformat() if release_timestamp else None,
        }

        if session.latest_version is None:
            outcome = "error"
        else:
            outcome = "update_available" if update_available else "up_to_date"

        try:
            self.config_store.set(SOFTWARE_UPDATE_AVAILABLE, "true" if update_available else "false")
            self._log_update_check(source, outcome, session)
        except Exception as e:
            logger.error("update_check_not_recorded", error=str(e))

        logger.info("update_check_complete", **result)
        return result

    def _log_update_check(self, source: str, outcome: str, session: UpdateSession) -> None:
        with self._session_factory() as db_session:
            db_session.add(
                UpdateCheck(
                    source=source if source in CHECK_SOURCES else "manual",
                    result=outcome,
                    current_version=session.current_version,
                    latest_version=session.latest_version,
                    error_message=None if outcome != "error" else "Release metadata unavailable",
                )
            )
            db_session.commit()

    def get_latest_version_release_timestamp(self) -> datetime:
        """
        Release time of the latest version

        Raises:
            MetadataError: If the metadata cannot be fetched
            ReleaseTimestampError: If the published timestamp is malformed
        """
        return self.version_resolver.get_latest_version_release_timestamp(UpdateSession())

    def upgrade(self) -> UpdateResult:
        """
        Upgrade the installation to the latest release

        Returns:
            UpdateResult; success is True only for completed or no-op runs
        """
        session = UpdateSession()
        session.transition(UpgradeState.CHECKING_VERSION)
        logger.info("upgrade_started")

        try:
            current_version = self.version_resolver.get_current_version(session)
            target_version = self.version_resolver.get_latest_version(session)
        except Exception as e:
            logger.error("upgrade_version_check_failed", error=str(e))
            return self._finish(session, UpgradeState.FAILED, VERSION_CHECK_FAILED, f"Version check failed: {e}")

        if current_version == target_version:
            return self._finish(
                session,
                UpgradeState.NO_UPDATE,
                NO_UPDATE_AVAILABLE,
                f"Version {current_version} is already installed",
                success=True,
            )

        session.transition(UpgradeState.BACKING_UP)
        try:
            self.backup_manager.backup(session)
        except Exception as e:
            logger.error("upgrade_aborted_backup_failed", error=str(e))
            return self._finish(session, UpgradeState.FAILED, BACKUP_FAILED, f"Backup failed: {e}")

        try:
            session.transition(UpgradeState.SYNCING)
            session.remote_manifest = self.manifest_store.fetch_remote(target_version)
            self.manifest_store.replace_local(session.remote_manifest)
            session.local_manifest = self.manifest_store.load_local()
            report = self.synchronizer.sync(session)

            session.transition(UpgradeState.FINALIZING)
            session.remote_manifest = None
            session.latest_version = None
            session.current_version = session.local_manifest.version if session.local_manifest else None
            services_version = self.config_store.get(SERVICES_VERSION)
        except Exception as e:
            logger.error("upgrade_failed", error=str(e), state=session.state.value)
            return self._roll_back(session, e, current_version, target_version)

        details: Dict[str, Any] = {
            "snapshot": str(session.snapshot.path),
            "downloaded": report.downloaded,
            "failed": report.failed,
            "deleted": report.deleted,
        }
        logger.info("upgrade_files_complete", from_version=current_version, to_version=target_version)

        installed_version = session.current_version or target_version
        if services_version is None or services_version.lower() != installed_version.lower():
            # With no recorded services version the pre-upgrade release counts as applied
            migration = self.schema_migrator.migrate(installed_version, services_version or current_version)
            details["migration"] = migration.to_dict()
            if not migration.success:
                session.transition(UpgradeState.ROLLING_BACK)
                state, code = UpgradeState.ROLLED_BACK, SQL_EXECUTION_FAILURE
                if not migration.snapshot_restored:
                    logger.critical("migration_restore_failed", snapshot=details["snapshot"])
                    state, code = UpgradeState.FAILED_IRRECOVERABLE, ROLLBACK_FAILED
                return self._finish(
                    session,
                    state,
                    code,
                    f"Database migration to {migration.target_version} failed: {migration.error}",
                    from_version=current_version,
                    to_version=target_version,
                    details=details,
                )

        try:
            self.config_store.set(SOFTWARE_UPDATE_AVAILABLE, "false")
            self.config_store.set(LAST_SOFTWARE_UPDATE, datetime.now(timezone.utc).isoformat())
        except Exception as e:
            logger.error("upgrade_status_not_recorded", error=str(e))

        return self._finish(
            session,
            UpgradeState.COMPLETED,
            UPGRADE_COMPLETED,
            f"Successfully updated from {current_version} to {target_version}",
            success=True,
            from_version=current_version,
            to_version=target_version,
            details=details,
        )

    def _roll_back(
        self,
        session: UpdateSession,
        error: Exception,
        from_version: Optional[str],
        to_version: str,
    ) -> UpdateResult:
        session.transition(UpgradeState.ROLLING_BACK)
        snapshot_path = session.snapshot.path
        try:
            restored = self.rollback_manager.rollback(snapshot_path)
        except RestoreError as re:
            logger.critical("rollback_failed", error=str(re), snapshot=str(snapshot_path))
            return self._finish(
                session,
                UpgradeState.FAILED_IRRECOVERABLE,
                ROLLBACK_FAILED,
                f"Update and rollback both failed: {re}. Manual intervention required.",
                from_version=from_version,
                to_version=to_version,
                details={"error": str(error), "snapshot": str(snapshot_path)},
            )

        if not restored:
            logger.critical("rollback_snapshot_missing", snapshot=str(snapshot_path))
            return self._finish(
                session,
                UpgradeState.FAILED_IRRECOVERABLE,
                ROLLBACK_FAILED,
                f"Update failed and snapshot {snapshot_path} is missing. Manual intervention required.",
                from_version=from_version,
                to_version=to_version,
                details={"error": str(error), "snapshot": str(snapshot_path)},
            )

        return self._finish(
            session,
            UpgradeState.ROLLED_BACK,
            UPGRADE_ROLLED_BACK,
            f"Update failed: {error}. Rolled back to {from_version}",
            from_version=from_version,
            to_version=to_version,
            details={"error": str(error), "snapshot": str(snapshot_path)},
        )

    def _finish(
        self,
        session: UpdateSession,
        state: UpgradeState,
        code: str,
        message: str,
        success: bool = False,
        **kwargs: Any,
    ) -> UpdateResult:
        session.transition(state)
        log = logger.info if success else logger.error
        log("upgrade_finished", state=state.value, code=code, message=message)
        history = session.history + [session.state]
        return UpdateResult(success=success, code=code, message=message, state=state, history=history, **kwargs)

    def update_database(self, session: Optional[UpdateSession] = None) -> Optional[MigrationResult]:
        """
        Run the database scripts of the installed release if not yet applied

        Returns:
            MigrationResult, or None if there was nothing to migrate
        """
        session = session or UpdateSession()
        try:
            current_version = session.current_version or self.version_resolver.get_current_version(session)
            services_version = self.config_store.get(SERVICES_VERSION)
        except Exception as e:
            logger.error("db_version_lookup_failed", error=str(e))
            return None

        logger.info("checking_db_version", current_version=current_version, services_version=services_version)
        if current_version and services_version and current_version.lower() != services_version.lower():
            return self.schema_migrator.migrate(current_version, services_version)
        return None

    def get_component_checksums(self) -> Dict[str, Optional[str]]:
        """Recorded checksums of manifest entries naming a configured component"""
        try:
            manifest = self.manifest_store.load_local()
        except ManifestError as e:
            logger.error("component_checksums_unavailable", error=str(e))
            return {}
        if manifest is None:
            return {}
        return {
            name: entry.checksum
            for name, entry in manifest.entries.items()
            if any(component in name for component in self.component_names)
        }


def build_orchestrator(engine: Engine, settings: Optional[Settings] = None) -> UpdateOrchestrator:
    """Assemble an orchestrator from settings and configure logging"""
    settings = settings or get_settings()
    configure_logging(settings)
    install_root = Path(settings.install_root)
    client_base_url = settings.resolve_url(settings.client_base_url)

    client = DistributionClient(
        timeout=settings.http_timeout_seconds,
        download_timeout=settings.download_timeout_seconds,
    )
    config_store = ConfigStore()
    manifest_store = ManifestStore(install_root, client, client_base_url)
    differ = ManifestDiffer(install_root / LIB_FOLDER)
    rollback_manager = RollbackManager(install_root, config_store)

    return UpdateOrchestrator(
        version_resolver=VersionResolver(manifest_store, client, settings.resolve_url(settings.metadata_url)),
        manifest_store=manifest_store,
        synchronizer=ArtifactSynchronizer(install_root / LIB_FOLDER, client, client_base_url, differ),
        backup_manager=BackupManager(Path(settings.backup_root), install_root, config_store),
        rollback_manager=rollback_manager,
        schema_migrator=SchemaMigrator(
            engine, config_store, rollback_manager, resources_root=settings.migration_resources_root
        ),
        config_store=config_store,
        component_names=settings.component_names,
    )
