"""
Unit tests for the update orchestrator.
"""
from unittest.mock import patch

from sqlalchemy import inspect, select

from softupdate.models.update_config import (
    LAST_SOFTWARE_UPDATE,
    SERVICES_VERSION,
    SOFTWARE_BACKUP_FOLDER,
    SOFTWARE_UPDATE_AVAILABLE,
    UpdateCheck,
)
from softupdate.services.backup_manager import BackupError
from softupdate.services.rollback_manager import RestoreError
from softupdate.services.session import UpgradeState
from softupdate.services.update_orchestrator import (
    BACKUP_FAILED,
    NO_UPDATE_AVAILABLE,
    ROLLBACK_FAILED,
    SQL_EXECUTION_FAILURE,
    UPGRADE_COMPLETED,
    UPGRADE_ROLLED_BACK,
    VERSION_CHECK_FAILED,
)

from conftest import BASE_URL, METADATA_URL, NEW_LIB, NEW_VERSION, OLD_VERSION, metadata_xml, sha256, snapshot_tree, write_scripts


class TestCheckForUpdate:
    """Tests for update checks."""

    def test_update_available(self, orchestrator, config_store, session_factory):
        result = orchestrator.check_for_update(source="scheduled")

        assert result["update_available"] is True
        assert result["current_version"] == OLD_VERSION
        assert result["latest_version"] == NEW_VERSION
        assert result["release_timestamp"] == "2024-03-15T10:30:00+00:00"
        assert config_store.get_bool(SOFTWARE_UPDATE_AVAILABLE) is True

        with session_factory() as session:
            check = session.execute(select(UpdateCheck)).scalar_one()
            assert check.source == "scheduled"
            assert check.result == "update_available"
            assert check.latest_version == NEW_VERSION

    def test_up_to_date(self, orchestrator, fake_client, config_store):
        fake_client.files[METADATA_URL] = metadata_xml(OLD_VERSION)
        result = orchestrator.check_for_update()
        assert result["update_available"] is False
        assert config_store.get_bool(SOFTWARE_UPDATE_AVAILABLE) is False

    def test_metadata_unavailable_recorded_as_error(self, orchestrator, fake_client, session_factory):
        del fake_client.files[METADATA_URL]

        result = orchestrator.check_for_update(source="startup")

        assert result["update_available"] is False
        assert result["latest_version"] is None
        with session_factory() as session:
            check = session.execute(select(UpdateCheck)).scalar_one()
            assert check.result == "error"
            assert check.error_message is not None

    def test_unknown_source_recorded_as_manual(self, orchestrator, session_factory):
        orchestrator.check_for_update(source="cron")
        with session_factory() as session:
            assert session.execute(select(UpdateCheck)).scalar_one().source == "manual"

    def test_has_update(self, orchestrator):
        assert orchestrator.has_update() is True


class TestUpgrade:
    """Tests for the upgrade workflow."""

    def test_successful_upgrade(self, orchestrator, install_root, fake_client, config_store):
        result = orchestrator.upgrade()

        assert result.success is True
        assert result.code == UPGRADE_COMPLETED
        assert result.state == UpgradeState.COMPLETED
        assert result.from_version == OLD_VERSION
        assert result.to_version == NEW_VERSION
        assert sorted(result.details["downloaded"]) == ["new-lib.jar", "registration-client.jar"]
        assert result.details["deleted"] == ["old-only.jar"]

        assert sorted(p.name for p in (install_root / "lib").iterdir()) == sorted(NEW_LIB)
        for name, data in NEW_LIB.items():
            assert (install_root / "lib" / name).read_bytes() == data
        assert (install_root / "MANIFEST.MF").read_bytes() == fake_client.files[
            f"{BASE_URL}{NEW_VERSION}/MANIFEST.MF"
        ]
        assert config_store.get_bool(SOFTWARE_UPDATE_AVAILABLE) is False
        assert config_store.get(LAST_SOFTWARE_UPDATE) is not None
        assert config_store.get(SOFTWARE_BACKUP_FOLDER) == result.details["snapshot"]

    def test_unchanged_artifacts_not_downloaded(self, orchestrator, fake_client):
        orchestrator.upgrade()
        assert f"{BASE_URL}{NEW_VERSION}/lib/registration-services.jar" not in fake_client.downloaded
        assert f"{BASE_URL}{NEW_VERSION}/lib/commons.jar" not in fake_client.downloaded

    def test_no_update(self, orchestrator, fake_client, backup_root):
        fake_client.files[METADATA_URL] = metadata_xml(OLD_VERSION)

        result = orchestrator.upgrade()

        assert result.success is True
        assert result.code == NO_UPDATE_AVAILABLE
        assert result.state == UpgradeState.NO_UPDATE
        assert not backup_root.exists()

    def test_version_check_failure(self, orchestrator, fake_client, install_root):
        before = snapshot_tree(install_root)
        fake_client.files[METADATA_URL] = b"<broken"

        result = orchestrator.upgrade()

        assert result.success is False
        assert result.code == VERSION_CHECK_FAILED
        assert result.state == UpgradeState.FAILED
        assert snapshot_tree(install_root) == before

    def test_backup_failure_leaves_install_untouched(self, orchestrator, install_root, fake_client):
        before = snapshot_tree(install_root)
        with patch.object(orchestrator.backup_manager, "create_backup", side_effect=BackupError("disk full")):
            result = orchestrator.upgrade()

        assert result.code == BACKUP_FAILED
        assert result.state == UpgradeState.FAILED
        assert snapshot_tree(install_root) == before
        assert fake_client.downloaded == []

    def test_sync_failure_rolls_back_byte_identical(self, orchestrator, install_root, fake_client):
        before = snapshot_tree(install_root)
        fake_client.download_errors[f"{BASE_URL}{NEW_VERSION}/lib/registration-client.jar"] = RuntimeError(
            "worker crashed"
        )

        result = orchestrator.upgrade()

        assert result.success is False
        assert result.code == UPGRADE_ROLLED_BACK
        assert result.state == UpgradeState.ROLLED_BACK
        assert "worker crashed" in result.details["error"]
        assert snapshot_tree(install_root) == before

    def test_missing_remote_manifest_rolls_back(self, orchestrator, install_root, fake_client):
        before = snapshot_tree(install_root)
        del fake_client.files[f"{BASE_URL}{NEW_VERSION}/MANIFEST.MF"]

        result = orchestrator.upgrade()

        assert result.code == UPGRADE_ROLLED_BACK
        assert snapshot_tree(install_root) == before

    def test_restore_failure_is_irrecoverable(self, orchestrator, fake_client):
        fake_client.download_errors[f"{BASE_URL}{NEW_VERSION}/lib/new-lib.jar"] = RuntimeError("boom")

        with patch.object(orchestrator.rollback_manager, "rollback", side_effect=RestoreError("disk full")):
            result = orchestrator.upgrade()

        assert result.success is False
        assert result.code == ROLLBACK_FAILED
        assert result.state == UpgradeState.FAILED_IRRECOVERABLE
        assert "Manual intervention" in result.message

    def test_missing_snapshot_is_irrecoverable(self, orchestrator, fake_client):
        fake_client.download_errors[f"{BASE_URL}{NEW_VERSION}/lib/new-lib.jar"] = RuntimeError("boom")

        with patch.object(orchestrator.rollback_manager, "rollback", return_value=False):
            result = orchestrator.upgrade()

        assert result.code == ROLLBACK_FAILED
        assert result.state == UpgradeState.FAILED_IRRECOVERABLE

    def test_migration_runs_after_files(self, orchestrator, config_store, resources_root):
        config_store.set(SERVICES_VERSION, OLD_VERSION)
        write_scripts(resources_root, NEW_VERSION, forward="CREATE TABLE release_notes (id INTEGER);")

        result = orchestrator.upgrade()

        assert result.code == UPGRADE_COMPLETED
        assert result.details["migration"]["success"] is True
        assert config_store.get(SERVICES_VERSION) == NEW_VERSION

    def test_migration_failure_restores_snapshot(self, orchestrator, config_store, resources_root, install_root):
        before = snapshot_tree(install_root)
        config_store.set(SERVICES_VERSION, OLD_VERSION)
        write_scripts(resources_root, NEW_VERSION, forward="INSERT INTO missing_table VALUES (1);")

        result = orchestrator.upgrade()

        assert result.success is False
        assert result.code == SQL_EXECUTION_FAILURE
        assert result.state == UpgradeState.ROLLED_BACK
        assert snapshot_tree(install_root) == before
        assert config_store.get(SERVICES_VERSION) == OLD_VERSION
        assert config_store.get(SOFTWARE_BACKUP_FOLDER) is None

    def test_result_to_dict(self, orchestrator):
        data = orchestrator.upgrade().to_dict()
        assert data["state"] == "completed"
        assert data["code"] == UPGRADE_COMPLETED


class TestUpdateDatabase:
    """Tests for the startup database check."""

    def test_nothing_to_do_without_services_version(self, orchestrator):
        assert orchestrator.update_database() is None

    def test_nothing_to_do_when_versions_match_ignoring_case(self, orchestrator, config_store):
        config_store.set(SERVICES_VERSION, OLD_VERSION.upper())
        assert orchestrator.update_database() is None

    def test_migrates_installed_version(self, orchestrator, config_store):
        config_store.set(SERVICES_VERSION, "0.9.0")

        result = orchestrator.update_database()

        assert result.success is True
        assert result.target_version == OLD_VERSION
        assert result.previous_version == "0.9.0"
        assert config_store.get(SERVICES_VERSION) == OLD_VERSION


class TestComponentChecksums:
    """Tests for component checksum reporting."""

    def test_filters_by_component_name(self, orchestrator):
        checksums = orchestrator.get_component_checksums()
        assert checksums == {
            "registration-client.jar": sha256(b"client-v1"),
            "registration-services.jar": sha256(b"services-v1"),
        }

    def test_empty_without_manifest(self, orchestrator, install_root):
        (install_root / "MANIFEST.MF").unlink()
        assert orchestrator.get_component_checksums() == {}

    def test_release_timestamp(self, orchestrator):
        assert orchestrator.get_latest_version_release_timestamp().year == 2024


class TestUpgradeMigration:
    """Tests for the schema migration step of an upgrade."""

    def test_migration_runs_without_recorded_services_version(
        self, orchestrator, config_store, resources_root, engine
    ):
        """A fresh install has no services version; the release scripts still run."""
        write_scripts(resources_root, NEW_VERSION, forward="CREATE TABLE release_notes (id INTEGER);")

        result = orchestrator.upgrade()

        assert result.code == UPGRADE_COMPLETED
        assert result.details["migration"]["success"] is True
        assert result.details["migration"]["previous_version"] == OLD_VERSION
        assert config_store.get(SERVICES_VERSION) == NEW_VERSION
        assert "release_notes" in inspect(engine).get_table_names()

    def test_migration_skipped_when_already_applied(self, orchestrator, config_store):
        config_store.set(SERVICES_VERSION, NEW_VERSION)
        result = orchestrator.upgrade()
        assert result.code == UPGRADE_COMPLETED
        assert "migration" not in result.details

    def test_completed_recorded_once_after_migration(self, orchestrator):
        result = orchestrator.upgrade()
        assert result.history.count(UpgradeState.COMPLETED) == 1
        assert result.history[-2:] == [UpgradeState.FINALIZING, UpgradeState.COMPLETED]

    def test_migration_failure_passes_through_rolling_back(self, orchestrator, resources_root):
        write_scripts(resources_root, NEW_VERSION, forward="INSERT INTO missing_table VALUES (1);")

        result = orchestrator.upgrade()

        assert result.code == SQL_EXECUTION_FAILURE
        assert UpgradeState.COMPLETED not in result.history
        assert result.history[-2:] == [UpgradeState.ROLLING_BACK, UpgradeState.ROLLED_BACK]
        assert result.to_dict()["history"][-1] == "rolled_back"

    def test_migration_failure_keeps_update_flag(self, orchestrator, config_store, resources_root):
        """Files are back on the old release, so the update is still pending."""
        orchestrator.check_for_update()
        write_scripts(resources_root, NEW_VERSION, forward="INSERT INTO missing_table VALUES (1);")

        orchestrator.upgrade()

        assert config_store.get_bool(SOFTWARE_UPDATE_AVAILABLE) is True
        assert config_store.get(LAST_SOFTWARE_UPDATE) is None

    def test_unrestored_snapshot_after_migration_failure(self, orchestrator, resources_root):
        write_scripts(resources_root, NEW_VERSION, forward="INSERT INTO missing_table VALUES (1);")

        with patch.object(orchestrator.rollback_manager, "rollback", side_effect=RestoreError("disk full")):
            result = orchestrator.upgrade()

        assert result.code == ROLLBACK_FAILED
        assert result.state == UpgradeState.FAILED_IRRECOVERABLE
