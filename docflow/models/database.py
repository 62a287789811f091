"""
Database configuration and session management.
Backs the route registry and instance store when STORAGE_BACKEND=sqlite.

SQLite Configuration:
- WAL (Write-Ahead Logging) mode for better concurrency
- Foreign key constraints enforcement
- check_same_thread disabled so FastAPI's threadpool can share the engine
"""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from typing import Optional
import structlog

from docflow.config.settings import settings

logger = structlog.get_logger()

# Base class for models
Base = declarative_base()


def _connect_args(url: str) -> dict:
    """Get SQLite-specific connection arguments"""
    if url.startswith("sqlite"):
        return {"timeout": 10.0, "check_same_thread": False}
    return {}


class Database:
    """Database helper class for managing connections"""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or settings.database_url
        self.engine = create_engine(
            self.url,
            echo=settings.database_echo if echo is None else echo,
            future=True,
            connect_args=_connect_args(self.url),
        )

        if self.url.startswith("sqlite"):
            # Pragmas are per-connection, not persistent
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self.session_factory = sessionmaker(
            self.engine,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info("database_engine_created", url=self.url)

    def init(self):
        """
        Create all tables and configure SQLite optimizations.
        """
        # Register the ORM tables on Base.metadata
        from docflow.models import orm  # noqa: F401

        with self.engine.begin() as conn:
            if self.url.startswith("sqlite") and ":memory:" not in self.url:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))

            Base.metadata.create_all(conn)

        logger.info("database_initialized", url=self.url)

    def close(self):
        """Close all connections"""
        self.engine.dispose()

    @contextmanager
    def session(self):
        """
        Context manager for a transactional session.

        Usage:
            with db.session() as session:
                session.add(...)
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
