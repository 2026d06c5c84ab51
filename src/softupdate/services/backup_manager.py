"""
Backup Manager - Handles the rollback snapshot for updates

Before anything in the installation is touched, bin/, lib/ and the manifest
are copied into ``{backup_root}/{version}_{timestamp}Z``. Only the newest
snapshot is kept; its path is recorded in the update configuration so a
later failure (including a failed schema migration after restart) can find it.
"""
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from softupdate.models.update_config import SOFTWARE_BACKUP_FOLDER
from softupdate.services.config_store import ConfigStore
from softupdate.services.manifest import MANIFEST_FILE
from softupdate.services.session import Snapshot, UpdateSession

logger = structlog.get_logger(__name__)

BIN_FOLDER = "bin"
LIB_FOLDER = "lib"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%f"
UNKNOWN_VERSION = "unknown"


class BackupError(Exception):
    """Raised when a snapshot cannot be created"""

    pass


def _count_files(directory: Path) -> int:
    if not directory.exists():
        return 0
    return sum(1 for item in directory.rglob("*") if item.is_file())


class BackupManager:
    """
    Creates and prunes rollback snapshots
    """

    def __init__(
        self,
        backup_root: Path,
        install_root: Path,
        config_store: ConfigStore,
    ):
        """
        Initialize BackupManager

        Args:
            backup_root: Directory holding the snapshot
            install_root: Directory holding bin/, lib/ and MANIFEST.MF
            config_store: Where the snapshot path is recorded
        """
        self.backup_root = Path(backup_root)
        self.install_root = Path(install_root)
        self.config_store = config_store

    def _get_backup_dir(self, version: Optional[str], now: datetime) -> Path:
        """Get the snapshot directory path for a version"""
        safe_version = (version or UNKNOWN_VERSION).replace("/", "_").replace("\\", "_")
        return self.backup_root / f"{safe_version}_{now.strftime(SNAPSHOT_TIMESTAMP_FORMAT)}Z"

    def _verify_snapshot(self, snapshot_dir: Path) -> None:
        for folder in (BIN_FOLDER, LIB_FOLDER):
            live = self.install_root / folder
            copied = snapshot_dir / folder
            if not copied.is_dir():
                raise BackupError(f"Snapshot folder missing: {copied}")
            if _count_files(live) != _count_files(copied):
                raise BackupError(f"Snapshot of {folder} is incomplete")
        if (self.install_root / MANIFEST_FILE).exists() and not (snapshot_dir / MANIFEST_FILE).is_file():
            raise BackupError("Snapshot manifest missing")

    def _prune(self, keep: Path) -> int:
        """Delete every snapshot except ``keep``"""
        removed = 0
        for item in self.backup_root.iterdir():
            if item.is_dir() and item != keep:
                try:
                    shutil.rmtree(item)
                    removed += 1
                    logger.info("backup_pruned", path=str(item))
                except OSError as e:
                    logger.error("failed_to_prune_backup", path=str(item), error=str(e))
        return removed

    def create_backup(self, version: Optional[str]) -> Snapshot:
        """
        Snapshot the current installation

        Args:
            version: Installed version, used in the snapshot name

        Returns:
            The new snapshot

        Raises:
            BackupError: If the snapshot cannot be created and verified
        """
        now = datetime.now(timezone.utc)
        snapshot_dir = self._get_backup_dir(version, now)
        logger.info("creating_backup", version=version, backup_dir=str(snapshot_dir))

        try:
            (snapshot_dir / BIN_FOLDER).mkdir(parents=True, exist_ok=True)
            (snapshot_dir / LIB_FOLDER).mkdir(parents=True, exist_ok=True)

            for folder in (BIN_FOLDER, LIB_FOLDER):
                source = self.install_root / folder
                if source.exists():
                    shutil.copytree(source, snapshot_dir / folder, dirs_exist_ok=True)

            manifest = self.install_root / MANIFEST_FILE
            if manifest.exists():
                shutil.copy2(manifest, snapshot_dir / MANIFEST_FILE)

            self._verify_snapshot(snapshot_dir)
        except BackupError as e:
            shutil.rmtree(snapshot_dir, ignore_errors=True)
            logger.error("backup_verification_failed", version=version, error=str(e))
            raise
        except OSError as e:
            shutil.rmtree(snapshot_dir, ignore_errors=True)
            logger.error("backup_failed", version=version, error=str(e))
            raise BackupError(f"Failed to create backup: {str(e)}") from e

        self._prune(keep=snapshot_dir)
        self.config_store.set(SOFTWARE_BACKUP_FOLDER, str(snapshot_dir))

        logger.info("backup_created", version=version, path=str(snapshot_dir))
        return Snapshot(path=snapshot_dir, created_at=now, source_version=version)

    def backup(self, session: UpdateSession) -> Snapshot:
        """Snapshot the installation for the session's current version"""
        session.snapshot = self.create_backup(session.current_version)
        return session.snapshot

    def list_snapshots(self) -> List[Snapshot]:
        """
        List snapshots under the backup root

        Returns:
            Snapshots sorted by creation date (newest first)
        """
        snapshots = []
        if not self.backup_root.exists():
            return snapshots

        for item in self.backup_root.iterdir():
            if not item.is_dir():
                continue
            version, _, stamp = item.name.rpartition("_")
            try:
                created_at = datetime.strptime(stamp.rstrip("Z"), SNAPSHOT_TIMESTAMP_FORMAT).replace(
                    tzinfo=timezone.utc
                )
            except ValueError:
                logger.warning("invalid_backup_name", path=str(item))
                continue
            snapshots.append(Snapshot(path=item, created_at=created_at, source_version=version or None))

        snapshots.sort(key=lambda s: s.created_at, reverse=True)
        return snapshots

    def latest_snapshot(self) -> Optional[Snapshot]:
        """Get the newest snapshot, if any"""
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None
