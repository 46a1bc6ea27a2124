"""
Database Connection Manager - SQLite Async
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "migrations" / "init_schema.sql"


class DatabaseManager:
    """Async SQLite database connection manager."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    @classmethod
    async def create(cls, db_path: Path | str) -> "DatabaseManager":
        """Create and initialize the database manager."""
        manager = cls(Path(db_path))
        await manager._init_db()
        return manager

    async def _init_db(self) -> None:
        """Initialize the database with schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            if SCHEMA_PATH.exists():
                await db.executescript(SCHEMA_PATH.read_text())
                await db.commit()
                logger.info("Database schema initialized with WAL mode")
            else:
                logger.warning(f"Schema file not found: {SCHEMA_PATH}")

            # Databases created before welcome templates were configurable
            try:
                await db.execute("SELECT welcome_message FROM guild_settings LIMIT 1")
            except aiosqlite.OperationalError:
                logger.info("Migrating: Adding welcome_message column to guild_settings table")
                await db.execute("ALTER TABLE guild_settings ADD COLUMN welcome_message TEXT")
                await db.commit()

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get a database connection."""
        # aiosqlite serialises access on its own worker thread
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL")

        try:
            yield self._connection
        except Exception:
            await self._connection.rollback()
            raise

    async def execute(self, query: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a query and return the cursor."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor

    async def fetch_one(self, query: str, params: tuple = ()) -> dict | None:
        """Fetch a single row as a dictionary."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict]:
        """Fetch all rows as a list of dictionaries."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")
