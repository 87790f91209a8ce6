"""Engine and session handling for the pipeline's relational store.

PostgreSQL in deployment; SQLite files for local runs and tests. The
pipeline runs different contracts on different threads, so SQLite
connections are shared across threads and wait on locks instead of
failing immediately.
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base


logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30


def get_database_url(
    host: Optional[str] = None,
    port: Optional[int] = None,
    database: Optional[str] = None,
    user: Optional[str] = None,
    password: Optional[str] = None,
) -> str:
    """
    Resolve the database URL.

    ``DATABASE_URL`` wins unless connection parts are passed explicitly;
    ``ESIGN_SQLITE_PATH`` selects a local SQLite file; otherwise a
    PostgreSQL URL is assembled from ``POSTGRES_*``.
    """
    explicit_parts = any([host, port, database, user, password])
    if not explicit_parts:
        if os.environ.get("DATABASE_URL"):
            return os.environ["DATABASE_URL"]
        if os.environ.get("ESIGN_SQLITE_PATH"):
            return f"sqlite:///{os.environ['ESIGN_SQLITE_PATH']}"

    host = host or os.environ.get("POSTGRES_HOST", "localhost")
    port = port or int(os.environ.get("POSTGRES_PORT", "5432"))
    database = database or os.environ.get("POSTGRES_DB", "contract_esign")
    user = user or os.environ.get("POSTGRES_USER", "postgres")
    password = password or os.environ.get("POSTGRES_PASSWORD", "postgres")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """
    Owns the engine and hands out transactional sessions.

    Shared by the records store, the coordinate map store and the audit
    logger of one pipeline.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        self._database_url = database_url or get_database_url()
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def database_url(self) -> str:
        return self._database_url

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    def _create_engine(self) -> Engine:
        if self.is_sqlite:
            engine = create_engine(
                self._database_url,
                echo=self._echo,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
            return engine
        return create_engine(
            self._database_url,
            pool_size=self._pool_size,
            max_overflow=self._max_overflow,
            pool_pre_ping=True,
            echo=self._echo,
        )

    @property
    def engine(self) -> Engine:
        """Engine, created on first use."""
        if self._engine is None:
            self._engine = self._create_engine()
            logger.debug(f"Created database engine ({self._engine.dialect.name})")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            # Loaded rows are read after commit when converting to domain models.
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        One unit of work: committed when the block exits normally and
        rolled back when it raises.

        Example:
            with db_manager.get_session() as session:
                session.add(model)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_database(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables ensured")

    def close(self) -> None:
        """Dispose of the engine; a later call to ``engine`` opens a new one."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
