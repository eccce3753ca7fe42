"""
Database Manager - async SQLite connection and session scope.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import event
from contextlib import asynccontextmanager
from pathlib import Path
import json
import logging

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages the SQLite database connection.

    Creates tables on first use and provides transactional session scopes.
    The engine is created lazily so it binds to the running event loop.
    """

    def __init__(self, storage_path: str = "./storage", db_name: str = "memory.db"):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_path / db_name
        self.db_url = f"sqlite+aiosqlite:///{self.db_path}"
        self._initialized = False
        self._engine = None
        self._session_factory = None

    def _get_engine(self):
        """Lazy engine creation - ensures it's created in the right event loop context."""
        if self._engine is None:
            self._engine = create_async_engine(
                self.db_url,
                connect_args={"check_same_thread": False},
                # Keep non-ASCII keywords searchable as stored text
                json_serializer=lambda value: json.dumps(value, ensure_ascii=False),
                # Each operation gets a fresh connection
                poolclass=NullPool,
            )

            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragmas(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                # WAL mode for better concurrent access
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                # 30 second busy timeout
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.close()

            self._session_factory = async_sessionmaker(
                bind=self._engine,
                expire_on_commit=False,
                class_=AsyncSession
            )
        return self._engine

    @property
    def engine(self):
        return self._get_engine()

    @property
    def SessionLocal(self):
        self._get_engine()  # Ensure engine is created
        return self._session_factory

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init_db(self):
        """Initialize the database tables."""
        if self._initialized:
            return

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def get_session(self):
        """Provide a transactional scope around a series of operations."""
        session = self.SessionLocal()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self):
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._initialized = False
