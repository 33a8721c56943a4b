# =======================================================================================
# gatepass/database.py - Database Management
# =======================================================================================
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import QueuePool

from .config import config
from .models.tables import metadata


def _engine_options(url: str) -> dict:
    """Pool settings for server databases, thread-safe connects for SQLite."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "future": True}
    return {
        "poolclass": QueuePool,
        "pool_size": config.DB_POOL_SIZE,
        "max_overflow": config.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
        "isolation_level": "READ COMMITTED",
        "future": True,
    }


class DatabaseManager:
    """Manages database connections and transactions."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or config.DB_URL
        self.engine: Engine = create_engine(self.url, **_engine_options(self.url))

    @contextmanager
    def get_connection(self) -> Generator[Connection, None, None]:
        """Get a database connection wrapped in a transaction.

        The transaction commits when the block exits normally and rolls back
        on any exception, so a failed state transition never leaves a partial write.
        """
        with self.engine.begin() as conn:
            yield conn

    def create_all(self) -> None:
        """Create any missing tables."""
        metadata.create_all(self.engine)

    def drop_all(self) -> None:
        metadata.drop_all(self.engine)

    def fetch_one(self, query: str, params: dict = None):
        """Fetch a single result."""
        with self.get_connection() as conn:
            result = conn.execute(text(query), params or {})
            return result.mappings().first()

    def dispose(self) -> None:
        self.engine.dispose()


# Global database instance
db_manager = DatabaseManager()
