"""
Database Connection Configuration

Engine, session and table management for the run records and the key-value
store. A local SQLite file is used unless DATABASE_URL points somewhere else.
"""

import os
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///./certbatch.db"


class DatabaseConfig:
    """Database settings read from the environment"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.echo = os.getenv("DB_ECHO", "false").lower() == "true"

        # Only used by server backends; SQLite gets a single-file engine
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def sqlite_path(self) -> Optional[Path]:
        """Filesystem path of a file-backed SQLite database"""
        if not self.is_sqlite:
            return None
        database = make_url(self.database_url).database
        if not database or database == ":memory:":
            return None
        return Path(database)

    def safe_url(self) -> str:
        """The URL with any password masked, for logs and status output"""
        return make_url(self.database_url).render_as_string(hide_password=True)

    def engine_options(self) -> Dict[str, Any]:
        if self.is_sqlite:
            # Background runs write from the event loop thread, requests from the threadpool
            return {"connect_args": {"check_same_thread": False}, "echo": self.echo}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
            "echo": self.echo,
        }

    def validate_config(self) -> tuple[bool, Optional[str]]:
        if not self.database_url:
            return False, "DATABASE_URL is required"
        try:
            make_url(self.database_url)
        except ArgumentError:
            return False, f"Invalid DATABASE_URL: {self.database_url}"
        return True, None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Lazily built engine plus a transactional session scope"""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            sqlite_path = self.config.sqlite_path
            if sqlite_path is not None:
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)

            self._engine = create_engine(self.config.database_url, **self.config.engine_options())
            if self.config.is_sqlite:
                # Row outcomes cascade with their batch run
                event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            logger.debug(f"Created database engine for {self.config.safe_url()}")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False
            )
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on success, roll back on any error"""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def test_connection(self) -> tuple[bool, Optional[str]]:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            return False, str(e)
        return True, None

    def create_tables(self, drop_first: bool = False) -> bool:
        try:
            if drop_first:
                Base.metadata.drop_all(bind=self.engine)
                logger.warning(f"Dropped certbatch tables in {self.config.safe_url()}")
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create tables: {e}")
            return False

        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
        return True

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database connections closed")
        self._engine = None
        self._session_factory = None


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """Get or create the global database manager"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(drop_first: bool = False) -> tuple[bool, Optional[str]]:
    """
    Validate the configuration, check connectivity and create missing tables

    Returns:
        (ok, message) where message describes the failure or the database used
    """
    db_manager = get_database_manager()

    is_valid, error_msg = db_manager.config.validate_config()
    if not is_valid:
        return False, f"Configuration error: {error_msg}"

    connection_ok, connection_error = db_manager.test_connection()
    if not connection_ok:
        return False, f"Connection error: {connection_error}"

    if not db_manager.create_tables(drop_first=drop_first):
        return False, "Failed to create database tables"

    return True, f"Database ready at {db_manager.config.safe_url()}"


def close_database():
    global _db_manager
    if _db_manager is not None:
        _db_manager.close()
        _db_manager = None
