from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aiwatch.db.models import Base


def _validate_postgresql_driver(database_url: str) -> None:
    """Validate PostgreSQL driver is installed when using PostgreSQL.

    Must actually import psycopg2 (not just check spec) because SQLAlchemy
    will try to import it when creating the engine.
    """
    if "postgres" in database_url.lower():
        try:
            import psycopg2  # noqa: F401

            logger.info("PostgreSQL driver (psycopg2) is available")
        except ImportError as e:
            logger.error(
                "⚠️ CRITICAL: PostgreSQL driver (psycopg2) is not installed!\n"
                "Install it with: pip install psycopg2-binary"
            )
            raise ImportError("PostgreSQL driver required. Install with: pip install psycopg2-binary") from e


class Database:
    """Durable store handle: engine, session factory and introspection.

    The engine is created lazily on first use so constructing a Database
    never opens a connection (health checks report the failure instead).
    """

    def __init__(self, database_url: str, engine: Engine | None = None) -> None:
        self.database_url = database_url
        self._engine = engine
        self._session_factory: sessionmaker[Session] | None = None

    @classmethod
    def in_memory(cls) -> Database:
        """Shared-connection in-memory SQLite database (tests, demos)."""
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        database = cls("sqlite://", engine=engine)
        database.create_all()
        return database

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            is_postgresql = "postgres" in self.database_url.lower()
            if is_postgresql:
                _validate_postgresql_driver(self.database_url)
                logger.info("Using PostgreSQL database (production-ready)")
            else:
                logger.warning("Using SQLite database (local development only)")

            connect_args: dict = {}
            if "sqlite" in self.database_url.lower():
                connect_args = {"check_same_thread": False}
            elif is_postgresql:
                connect_args = {
                    "connect_timeout": 10,
                    "application_name": "aiwatch",
                }

            self._engine = create_engine(
                self.database_url,
                connect_args=connect_args,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using (important for cloud DBs)
                pool_recycle=3600,
            )
            logger.info("Database engine initialized")
        return self._engine

    def _get_session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        return self._session_factory

    def create_all(self) -> None:
        """Create monitoring tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Monitoring tables verified")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get database session context manager.

        Commits on clean exit, rolls back and re-raises on error.
        """
        session = self._get_session_factory()()
        try:
            yield session
            if session.dirty or session.new or session.deleted:
                session.commit()
        except Exception as e:
            logger.bind(error_type=type(e).__name__).error(f"Database session error, rolling back: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        """Run SELECT 1. Raises on failure."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def pool_status(self) -> dict[str, int | str]:
        """Get connection pool occupancy from the pool's own introspection API.

        Returns:
            Dictionary with pool status metrics, or {"error": ...} if unavailable
        """
        try:
            pool = self.engine.pool
            status: dict[str, int | str] = {"pool_class": type(pool).__name__}
            # StaticPool/NullPool don't implement the QueuePool counters
            for name in ("size", "checkedin", "checkedout", "overflow"):
                method = getattr(pool, name, None)
                if callable(method):
                    status[name] = method()
        except Exception as e:
            logger.warning(f"Failed to get connection pool status: {e}")
            return {"error": str(e)}
        else:
            return status

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
