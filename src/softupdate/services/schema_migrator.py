"""
Schema Migrator - Applies the database scripts shipped with a release

Each release may ship ``sql/{version}/initial_db_scripts.sql`` and
``sql/{version}/rollback_scripts.sql``, where the version has any
``-suffix`` removed. Scripts are split on ``;`` and run one statement at a
time, so authored scripts must not contain ``;`` inside string literals or
procedure bodies.
"""
from dataclasses import asdict, dataclass
from importlib import resources
from pathlib import Path
from typing import List, Optional, Union

import structlog
from sqlalchemy.engine import Engine

from softupdate.models.update_config import SERVICES_VERSION, SOFTWARE_BACKUP_FOLDER
from softupdate.services.config_store import ConfigStore
from softupdate.services.rollback_manager import RestoreError, RollbackManager

logger = structlog.get_logger(__name__)

SQL_FOLDER = "sql"
FORWARD_SCRIPT = "initial_db_scripts.sql"
ROLLBACK_SCRIPT = "rollback_scripts.sql"
STATEMENT_DELIMITER = ";"

SQL_EXECUTION_SUCCESS = "SQL_EXECUTION_SUCCESS"
SQL_EXECUTION_FAILURE = "SQL_EXECUTION_FAILURE"


def version_core(version: str) -> str:
    """Strip a ``-suffix`` from a version string"""
    return version.split("-")[0]


def split_statements(script: str) -> List[str]:
    """Split a script on ``;`` and drop blank fragments"""
    return [part.strip() for part in script.split(STATEMENT_DELIMITER) if part.strip()]


@dataclass
class MigrationScriptPair:
    """Forward and rollback script resource paths for a version"""

    version_core: str
    forward_script_path: str
    rollback_script_path: str


@dataclass
class MigrationResult:
    """Outcome of one migration attempt"""

    success: bool
    code: str
    target_version: str
    previous_version: Optional[str]
    statements_executed: int = 0
    rolled_back: bool = False
    snapshot_restored: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class SchemaMigrator:
    """
    Runs forward scripts and, on failure, rollback scripts plus file restore
    """

    def __init__(
        self,
        engine: Engine,
        config_store: ConfigStore,
        rollback_manager: RollbackManager,
        resources_root: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize SchemaMigrator

        Args:
            engine: Engine of the application database
            config_store: Update configuration (services version, snapshot path)
            rollback_manager: Used to restore files when a migration fails
            resources_root: Directory containing the sql/ folder, defaults to
                the installed softupdate package
        """
        self.engine = engine
        self.config_store = config_store
        self.rollback_manager = rollback_manager
        self.resources_root = Path(resources_root) if resources_root else None

    def resolve_scripts(self, version: str) -> MigrationScriptPair:
        core = version_core(version)
        return MigrationScriptPair(
            version_core=core,
            forward_script_path=f"{SQL_FOLDER}/{core}/{FORWARD_SCRIPT}",
            rollback_script_path=f"{SQL_FOLDER}/{core}/{ROLLBACK_SCRIPT}",
        )

    def _load_script(self, resource_path: str) -> Optional[str]:
        root = self.resources_root if self.resources_root is not None else resources.files("softupdate")
        resource = root.joinpath(resource_path)
        if not resource.is_file():
            logger.info("sql_script_not_found", path=resource_path)
            return None
        logger.info("sql_script_found", path=resource_path)
        return resource.read_text(encoding="utf-8")

    def _run_script(self, resource_path: str, executed: List[str]) -> bool:
        """Execute a script statement by statement, committing each one; False if absent"""
        script = self._load_script(resource_path)
        if script is None:
            return False

        logger.info("sql_script_execution_started", path=resource_path)
        with self.engine.connect() as conn:
            for statement in split_statements(script):
                logger.info("executing_statement", statement=statement)
                conn.exec_driver_sql(statement)
                conn.commit()
                executed.append(statement)
        logger.info("sql_script_execution_completed", path=resource_path)
        return True

    def migrate(self, target_version: str, previous_version: Optional[str]) -> MigrationResult:
        """
        Bring the database schema to ``target_version``

        Never raises; failures are reported in the result.
        """
        logger.info(
            "db_migration_started",
            target_version=target_version,
            previous_version=previous_version,
        )
        pair = self.resolve_scripts(target_version)
        executed: List[str] = []

        try:
            self._run_script(pair.forward_script_path, executed)
            self.config_store.set(SERVICES_VERSION, target_version)
            logger.info("db_migration_completed", target_version=target_version, statements=len(executed))
            return MigrationResult(
                success=True,
                code=SQL_EXECUTION_SUCCESS,
                target_version=target_version,
                previous_version=previous_version,
                statements_executed=len(executed),
            )
        except Exception as e:
            logger.error("db_migration_failed", target_version=target_version, error=str(e))
            error = str(e)

        result = MigrationResult(
            success=False,
            code=SQL_EXECUTION_FAILURE,
            target_version=target_version,
            previous_version=previous_version,
            statements_executed=len(executed),
            error=error,
        )

        try:
            result.rolled_back = self._run_script(pair.rollback_script_path, [])
            logger.info("db_rollback_completed", path=pair.rollback_script_path, script_found=result.rolled_back)
        except Exception as e:
            logger.error("db_rollback_failed", path=pair.rollback_script_path, error=str(e))

        try:
            backup_path = self.config_store.get(SOFTWARE_BACKUP_FOLDER)
            if backup_path:
                result.snapshot_restored = self.rollback_manager.rollback(backup_path)
                self.config_store.clear(SOFTWARE_BACKUP_FOLDER)
        except RestoreError as e:
            logger.critical("snapshot_restore_failed", error=str(e))
            result.snapshot_restored = False
        except Exception as e:
            logger.error("backup_pointer_update_failed", error=str(e))

        return result
