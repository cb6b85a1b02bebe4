"""
Relational database client with connection pooling and helper functions.

Provides:
- Engine / connection pool management
- Session context manager with commit/rollback
- Idempotent table provisioning
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.tables import Base
from app.utils.config import get_settings


class DatabaseClient:
    """SQLAlchemy database client with connection pooling."""

    def __init__(self, url: str = None, echo: bool = None):
        """Initialize database client."""
        settings = get_settings()
        self.url = url or settings.database_url
        self.echo = settings.database_echo if echo is None else echo

        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def connect(self):
        """Create the engine and verify connectivity."""
        if self._engine is None:
            logger.info(f"Connecting to database at {self._redacted_url()}...")
            self._engine = create_engine(self.url, echo=self.echo, **self._engine_options())
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self._session_factory = sessionmaker(self._engine, expire_on_commit=False)
            logger.success("Connected to database successfully")

    def close(self):
        """Dispose the engine and its pool."""
        if self._engine is not None:
            logger.info("Closing database connection...")
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @property
    def engine(self) -> Engine:
        """Get engine, connecting if necessary."""
        if self._engine is None:
            self.connect()
        return self._engine

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a transactional session."""
        if self._session_factory is None:
            self.connect()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_tables(self):
        """Create file_status and project_metadata if they do not exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables ready")

    def _engine_options(self) -> dict:
        url = make_url(self.url)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            # A single shared connection so every session sees the same in-memory database
            return {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        if url.get_backend_name() == "sqlite":
            return {"connect_args": {"check_same_thread": False}}
        return {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    def _redacted_url(self) -> str:
        return make_url(self.url).render_as_string(hide_password=True)


# Global client instance
_client: Optional[DatabaseClient] = None


def get_database_client() -> DatabaseClient:
    """Get global database client instance."""
    global _client
    if _client is None:
        _client = DatabaseClient()
        _client.connect()
    return _client
