"""
Unit tests for restoring snapshots.
"""
from unittest.mock import patch

import pytest

from softupdate.services.rollback_manager import RestoreError

from conftest import snapshot_tree


class TestRollback:
    """Tests for restoring the installation."""

    def test_restores_byte_identical_tree(self, backup_manager, rollback_manager, install_root):
        before = snapshot_tree(install_root)
        snapshot = backup_manager.create_backup("1.0.0")

        (install_root / "lib" / "registration-client.jar").write_bytes(b"half written")
        (install_root / "lib" / "commons.jar").unlink()
        (install_root / "lib" / "new-lib.jar").write_bytes(b"from failed upgrade")
        (install_root / "lib" / "ext").mkdir()
        (install_root / "lib" / "ext" / "x.jar").write_bytes(b"x")
        (install_root / "MANIFEST.MF").write_bytes(b"Manifest-Version: 9.9.9\r\n")

        assert rollback_manager.rollback(snapshot.path) is True
        assert snapshot_tree(install_root) == before

    def test_missing_snapshot_returns_false(self, rollback_manager, tmp_path):
        assert rollback_manager.rollback(tmp_path / "does-not-exist") is False

    def test_copy_failure_raises_restore_error(self, backup_manager, rollback_manager):
        snapshot = backup_manager.create_backup("1.0.0")
        with patch("softupdate.services.rollback_manager.shutil.copytree", side_effect=OSError("disk full")):
            with pytest.raises(RestoreError):
                rollback_manager.rollback(snapshot.path)

    def test_restore_recorded_snapshot(self, backup_manager, rollback_manager, install_root):
        before = snapshot_tree(install_root)
        backup_manager.create_backup("1.0.0")
        (install_root / "bin" / "run.sh").write_bytes(b"changed")

        assert rollback_manager.restore_recorded_snapshot() is True
        assert snapshot_tree(install_root) == before

    def test_restore_without_recorded_snapshot(self, rollback_manager):
        assert rollback_manager.recorded_snapshot() is None
        assert rollback_manager.restore_recorded_snapshot() is False
