"""
Database Module
===============
AsyncPG connection pool and schema migrations for the payments table.

The pool is created at application startup when DATABASE_URL is set; without
it the service runs on the in-memory payment store.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# MIGRATIONS
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS payments (
        merchant_transaction_id VARCHAR(128) PRIMARY KEY,
        provider_transaction_id VARCHAR(128),
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        amount_minor_units BIGINT NOT NULL DEFAULT 0,
        customer_name TEXT,
        customer_email TEXT,
        customer_phone VARCHAR(32),
        customer_message TEXT,
        service_id VARCHAR(128),
        service_name TEXT,
        payment_mode VARCHAR(64),
        payment_state VARCHAR(64),
        error_code VARCHAR(128),
        failure_reason TEXT,
        refund_id VARCHAR(128),
        refund_amount_minor_units BIGINT,
        refunded_at TIMESTAMPTZ,
        notifications_sent BOOLEAN NOT NULL DEFAULT FALSE,
        provider VARCHAR(20) NOT NULL DEFAULT 'phonepe',
        environment VARCHAR(20) NOT NULL DEFAULT 'sandbox',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)",
    "CREATE INDEX IF NOT EXISTS idx_payments_environment ON payments(environment)",
    "CREATE INDEX IF NOT EXISTS idx_payments_customer_email ON payments(customer_email)",
    "CREATE INDEX IF NOT EXISTS idx_payments_created_at ON payments(created_at DESC)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, database_url: str, min_pool_size: int = 1, max_pool_size: int = 10):
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Create the pool and run migrations."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_init_failed", error=str(e))
            raise

        logger.info("database_pool_initialized",
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size)
        await self._run_migrations()

    async def close(self):
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete", count=len(MIGRATIONS))
