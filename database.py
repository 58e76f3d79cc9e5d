"""
Database access for the sync engine.

One ``DatabaseManager`` per process owns the engine and a thread-scoped session
registry. Request handlers wrap their work in ``db_session_scope()``; sync runs
receive that session and commit at the points where the sync log must be durable.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base, SyncLogEntry, SyncLogStatus

logger = logging.getLogger(__name__)


def _mask_credentials(url: str) -> str:
    if '@' not in url:
        return url
    scheme, rest = url.split('://', 1)
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def build_engine(database_url: str) -> Engine:
    """Engine tuned for the backing database.

    In-memory SQLite shares one connection so every session sees the same
    tables; file SQLite enforces foreign keys; anything else gets a pool.
    """
    if database_url.startswith('sqlite'):
        options: Dict[str, Any] = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            options['poolclass'] = StaticPool
        engine = create_engine(database_url, **options)

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600
    )


class DatabaseManager:
    """Engine and session registry for one database URL."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Config.DATABASE_URL
        self.engine: Optional[Engine] = None
        self._sessions: Optional[scoped_session] = None

    def initialize(self, create_tables: bool = False) -> None:
        try:
            self.engine = build_engine(self.database_url)
            self._sessions = scoped_session(sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False
            ))
            if create_tables:
                Base.metadata.create_all(self.engine)
                logger.info("Sync tables created")
        except Exception as e:
            logger.error(f"Failed to initialize database {_mask_credentials(self.database_url)}: {e}")
            raise

        logger.info(f"Database ready: {_mask_credentials(self.database_url)}")

    def get_session(self) -> Session:
        if self._sessions is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._sessions()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on success, roll back and re-raise on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Rolled back database session: {e}")
            raise
        finally:
            self._sessions.remove()

    def close(self) -> None:
        if self._sessions is not None:
            self._sessions.remove()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Database connections closed")

    def health_check(self) -> Dict[str, Any]:
        """Connectivity plus the number of sync runs still marked pending."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
                pending = session.query(func.count(SyncLogEntry.id)).filter(
                    SyncLogEntry.status == SyncLogStatus.PENDING.value
                ).scalar()
            return {'status': 'healthy', 'pending_sync_runs': pending}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}


db_manager = DatabaseManager()


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> None:
    """Point the process-wide manager at ``database_url`` and connect."""
    global db_manager
    if database_url:
        db_manager = DatabaseManager(database_url)
    db_manager.initialize(create_tables)


@contextmanager
def db_session_scope() -> Generator[Session, None, None]:
    with db_manager.session_scope() as session:
        yield session


def close_database() -> None:
    db_manager.close()
