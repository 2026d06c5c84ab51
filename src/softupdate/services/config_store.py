"""
Config Store - Persistent key/value configuration for the updater
"""
from datetime import datetime, timezone
from typing import Callable, ContextManager, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from softupdate.database import get_db_session
from softupdate.models.update_config import UpdateConfig, DEFAULT_UPDATE_CONFIG

logger = structlog.get_logger(__name__)

TRUE_VALUES = ("true", "1", "yes", "on", "y")


class ConfigStore:
    """
    Reads and writes UpdateConfig rows

    Each call opens its own short-lived session so values are committed
    as soon as they are written.
    """

    def __init__(self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None):
        """
        Initialize ConfigStore

        Args:
            session_factory: Callable returning a session context manager,
                defaults to softupdate.database.get_db_session
        """
        self._session_factory = session_factory or get_db_session

    def get(self, key: str) -> Optional[str]:
        """Get a configuration value, falling back to the built-in default"""
        with self._session_factory() as session:
            config = session.execute(
                select(UpdateConfig).where(UpdateConfig.key == key)
            ).scalar_one_or_none()
            if config is not None:
                return config.value
        if key in DEFAULT_UPDATE_CONFIG:
            return DEFAULT_UPDATE_CONFIG[key][0]
        return None

    def get_bool(self, key: str) -> bool:
        """Get a boolean configuration value"""
        value = self.get(key)
        return value is not None and value.lower() in TRUE_VALUES

    def set(self, key: str, value: Optional[str]) -> None:
        """Set a configuration value; None stores a cleared value"""
        with self._session_factory() as session:
            config = session.execute(
                select(UpdateConfig).where(UpdateConfig.key == key)
            ).scalar_one_or_none()
            if config:
                config.value = value
                config.updated_at = datetime.now(timezone.utc)
            else:
                description = DEFAULT_UPDATE_CONFIG.get(key, (None, None))[1]
                session.add(
                    UpdateConfig(
                        key=key,
                        value=value,
                        description=description,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
            session.commit()
        logger.debug("config_updated", key=key, value=value)

    def clear(self, key: str) -> None:
        """Clear a configuration value"""
        self.set(key, None)

    def all(self) -> Dict[str, Optional[str]]:
        """Get every configuration value including defaults not yet stored"""
        values = {key: default for key, (default, _) in DEFAULT_UPDATE_CONFIG.items()}
        with self._session_factory() as session:
            for config in session.execute(select(UpdateConfig)).scalars():
                values[config.key] = config.value
        return values
