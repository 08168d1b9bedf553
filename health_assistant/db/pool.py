"""PostgreSQL connection pool for conversation persistence."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncpg
from asyncpg.pool import Pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class DatabasePool:
    """Manages the asyncpg connection pool."""

    def __init__(self, database_url: str, min_size: int = 5, max_size: int = 20):
        """
        Args:
            database_url: PostgreSQL connection URL
            min_size: Minimum pooled connections
            max_size: Maximum pooled connections
        """
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[Pool] = None

    async def initialize(self):
        """Create connection pool."""
        if not self.pool:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                max_inactive_connection_lifetime=300,
                command_timeout=60
            )
            logger.info("Database connection pool initialized")

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if not self.pool:
            await self.initialize()

        async with self.pool.acquire() as connection:
            yield connection

    async def apply_migrations(self):
        """Run every SQL file under migrations/ in name order."""
        async with self.acquire() as conn:
            for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
                await conn.execute(path.read_text(encoding="utf-8"))
                logger.info(f"Applied migration {path.name}")

    async def test_connection(self) -> bool:
        """
        Test database connection.

        Returns:
            True if connection successful
        """
        try:
            async with self.acquire() as conn:
                await conn.fetchval("SELECT 1")
            logger.info("Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False
