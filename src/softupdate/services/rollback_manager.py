"""
Rollback Manager - Restores the installation from a snapshot
"""
import shutil
from pathlib import Path
from typing import Optional, Union

import structlog

from softupdate.models.update_config import SOFTWARE_BACKUP_FOLDER
from softupdate.services.backup_manager import BIN_FOLDER, LIB_FOLDER
from softupdate.services.config_store import ConfigStore
from softupdate.services.manifest import MANIFEST_FILE

logger = structlog.get_logger(__name__)


class RestoreError(Exception):
    """Raised when restoration fails - requires manual intervention"""

    pass


class RollbackManager:
    """
    Copies a snapshot's bin/, lib/ and manifest back over the installation
    """

    def __init__(self, install_root: Path, config_store: ConfigStore):
        self.install_root = Path(install_root)
        self.config_store = config_store

    def _mirror(self, source: Path, destination: Path) -> None:
        """Make destination an exact copy of source"""
        destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, destination, dirs_exist_ok=True)
        for item in sorted(destination.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if not (source / item.relative_to(destination)).exists():
                if item.is_dir():
                    shutil.rmtree(item)
                else:
                    item.unlink()

    def rollback(self, snapshot_path: Union[str, Path]) -> bool:
        """
        Restore the installation from a snapshot

        Args:
            snapshot_path: Snapshot directory

        Returns:
            True if files were restored, False if the snapshot does not exist

        Raises:
            RestoreError: If copying the snapshot back fails
        """
        snapshot_dir = Path(snapshot_path)
        logger.info("restoring_backup", backup_path=str(snapshot_dir))

        if not snapshot_dir.is_dir():
            logger.warning("backup_not_found", backup_path=str(snapshot_dir))
            return False

        try:
            for folder in (BIN_FOLDER, LIB_FOLDER):
                source = snapshot_dir / folder
                if source.is_dir():
                    self._mirror(source, self.install_root / folder)
            manifest = snapshot_dir / MANIFEST_FILE
            if manifest.is_file():
                shutil.copy2(manifest, self.install_root / MANIFEST_FILE)
        except OSError as e:
            logger.critical("restore_failed", backup_path=str(snapshot_dir), error=str(e))
            raise RestoreError(f"Restoration from {snapshot_dir} failed: {str(e)}") from e

        logger.info("restore_complete", backup_path=str(snapshot_dir))
        return True

    def recorded_snapshot(self) -> Optional[str]:
        """Path of the snapshot recorded by the last backup"""
        return self.config_store.get(SOFTWARE_BACKUP_FOLDER)

    def restore_recorded_snapshot(self) -> bool:
        """Restore from the recorded snapshot; False if none is recorded"""
        snapshot_path = self.recorded_snapshot()
        if not snapshot_path:
            logger.warning("no_backup_recorded")
            return False
        return self.rollback(snapshot_path)
