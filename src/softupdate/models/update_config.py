"""
Update Models - Persistent update configuration and check log

The key/value table carries the state shared between update runs: whether an
update is pending, when the last upgrade finished, where the rollback
snapshot lives and which database schema version is installed.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Integer,
    String,
    Text,
    CheckConstraint,
    TIMESTAMP,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from softupdate.database import Base

# Configuration keys
SOFTWARE_UPDATE_AVAILABLE = "software_update_available"
LAST_SOFTWARE_UPDATE = "last_software_update"
SOFTWARE_BACKUP_FOLDER = "software_backup_folder"
SERVICES_VERSION = "services_version"


class UpdateConfig(Base):
    """
    Update Configuration - Key/value settings persisted across update runs
    """

    __tablename__ = "update_config"

    # Primary Key
    key: Mapped[str] = mapped_column(String(100), primary_key=True)

    # Value (NULL means cleared)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Metadata
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        server_default=func.current_timestamp(),
    )

    def __repr__(self) -> str:
        return f"<UpdateConfig(key={self.key}, value={self.value})>"


class UpdateCheck(Base):
    """
    Update Check - Log of update check operations

    Records each time the system checks for updates, including the source
    (manual, scheduled or startup), the result and any error encountered.
    """

    __tablename__ = "update_checks"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Check Details
    checked_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        server_default=func.current_timestamp(),
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(30), nullable=False)

    # Version Information
    current_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    latest_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Error Information
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "source IN ('manual', 'scheduled', 'startup')",
            name="update_checks_source_check",
        ),
        CheckConstraint(
            "result IN ('up_to_date', 'update_available', 'error')",
            name="update_checks_result_check",
        ),
        Index("idx_update_checks_checked_at", "checked_at"),
    )

    def __repr__(self) -> str:
        return f"<UpdateCheck(id={self.id}, source={self.source}, result={self.result})>"


# Default configuration values
DEFAULT_UPDATE_CONFIG = {
    SOFTWARE_UPDATE_AVAILABLE: ("false", "Whether a newer release was found by the last check"),
    LAST_SOFTWARE_UPDATE: (None, "UTC timestamp of the last completed upgrade"),
    SOFTWARE_BACKUP_FOLDER: (None, "Path of the snapshot used for rollback"),
    SERVICES_VERSION: (None, "Release whose database scripts were applied last"),
}
