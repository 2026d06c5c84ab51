"""
softupdate Database Connection and ORM Setup
"""
from contextlib import contextmanager
from typing import Generator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = structlog.get_logger(__name__)

# Create declarative base for ORM models
Base = declarative_base()

# Global engine and session maker
engine: Optional[Engine] = None
session_maker: Optional[sessionmaker] = None


def _import_models():
    """Import all ORM models to register them with Base.metadata"""
    from softupdate.models import UpdateCheck, UpdateConfig  # noqa: F401


def init_database(database_url: str, create_tables: bool = True) -> Engine:
    """Initialize database connection and create the updater tables"""
    global engine, session_maker

    _import_models()

    logger.info("connecting_to_database", url=database_url)

    engine = create_engine(str(database_url), echo=False, pool_pre_ping=True)
    session_maker = sessionmaker(engine, expire_on_commit=False)

    if create_tables:
        Base.metadata.create_all(engine)

    logger.info("database_initialized")
    return engine


def close_database():
    """Close database connections"""
    global engine, session_maker

    if engine is not None:
        logger.info("closing_database_connections")
        engine.dispose()
    engine = None
    session_maker = None


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

        with get_db_session() as session:
            # use session here
    """
    if session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    session = session_maker()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
