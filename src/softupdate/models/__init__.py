"""
softupdate - SQLAlchemy ORM Models
"""

from softupdate.database import Base
from softupdate.models.update_config import (
    UpdateCheck,
    UpdateConfig,
    DEFAULT_UPDATE_CONFIG,
    SOFTWARE_UPDATE_AVAILABLE,
    LAST_SOFTWARE_UPDATE,
    SOFTWARE_BACKUP_FOLDER,
    SERVICES_VERSION,
)

__all__ = [
    "Base",
    "UpdateCheck",
    "UpdateConfig",
    "DEFAULT_UPDATE_CONFIG",
    "SOFTWARE_UPDATE_AVAILABLE",
    "LAST_SOFTWARE_UPDATE",
    "SOFTWARE_BACKUP_FOLDER",
    "SERVICES_VERSION",
]
