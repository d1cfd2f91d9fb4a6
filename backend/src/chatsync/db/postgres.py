"""PostgreSQL client for durable local rows, AI cache entries and rate limits."""

import json
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from chatsync.config import settings


# SQL schema for the durable tables
SCHEMA_SQL = """
-- Local store rows (conversations, messages, translations)
CREATE TABLE IF NOT EXISTS local_rows (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    scope_keys TEXT[] NOT NULL DEFAULT '{}',
    payload JSONB NOT NULL,
    PRIMARY KEY (entity_type, id)
);
CREATE INDEX IF NOT EXISTS idx_local_rows_scope ON local_rows USING GIN (scope_keys);

-- Content-addressed AI result cache
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    created_at BIGINT NOT NULL,
    PRIMARY KEY (namespace, key)
);

-- Fixed-window rate limit counters
CREATE TABLE IF NOT EXISTS rate_limits (
    user_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    window_start BIGINT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, operation)
);
"""


class Database:
    """PostgreSQL database client backing the durable stores."""

    def __init__(self, dsn: str | None = None):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self):
        """Create connection pool."""
        dsn = self._dsn or settings.database_url
        if not dsn:
            return
        self._pool = await asyncpg.create_pool(
            dsn,
            min_size=2,
            max_size=10,
        )

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        if not self._pool:
            return
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    # ============= Local Row Operations =============

    async def upsert_rows(
        self, entity_type: str, rows: list[tuple[str, list[str], str]]
    ) -> None:
        """Insert or replace rows of one entity type in a single transaction.

        Args:
            entity_type: Logical table name (e.g. "messages")
            rows: (id, scope_keys, payload JSON) tuples

        """
        if not rows:
            return
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO local_rows (entity_type, id, scope_keys, payload)
                    VALUES ($1, $2, $3, $4::jsonb)
                    ON CONFLICT (entity_type, id)
                    DO UPDATE SET scope_keys = EXCLUDED.scope_keys, payload = EXCLUDED.payload
                    """,
                    [(entity_type, row_id, scopes, payload) for row_id, scopes, payload in rows],
                )

    async def get_row(self, entity_type: str, row_id: str) -> dict[str, Any] | None:
        """Get one row payload by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT payload FROM local_rows WHERE entity_type = $1 AND id = $2",
                entity_type,
                row_id,
            )
        if not row:
            return None
        return self._decode(row["payload"])

    async def list_rows(self, entity_type: str, scope_key: str) -> list[dict[str, Any]]:
        """List every row payload whose scope keys contain scope_key."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT payload FROM local_rows
                WHERE entity_type = $1 AND $2 = ANY(scope_keys)
                """,
                entity_type,
                scope_key,
            )
        return [self._decode(row["payload"]) for row in rows]

    async def delete_row(self, entity_type: str, row_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "DELETE FROM local_rows WHERE entity_type = $1 AND id = $2",
                entity_type,
                row_id,
            )

    # ============= Cache Entry Operations =============

    async def get_cache_entry(
        self, namespace: str, key: str
    ) -> tuple[dict[str, Any], int] | None:
        """Get a cached value and its creation timestamp (ms)."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT value, created_at FROM cache_entries WHERE namespace = $1 AND key = $2",
                namespace,
                key,
            )
        if not row:
            return None
        return self._decode(row["value"]), row["created_at"]

    async def set_cache_entry(
        self, namespace: str, key: str, value: dict[str, Any], created_at: int
    ) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO cache_entries (namespace, key, value, created_at)
                VALUES ($1, $2, $3::jsonb, $4)
                ON CONFLICT (namespace, key)
                DO UPDATE SET value = EXCLUDED.value, created_at = EXCLUDED.created_at
                """,
                namespace,
                key,
                json.dumps(value),
                created_at,
            )

    async def delete_cache_entry(self, namespace: str, key: str) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "DELETE FROM cache_entries WHERE namespace = $1 AND key = $2",
                namespace,
                key,
            )

    # ============= Rate Limit Operations =============

    async def get_rate_limit(self, user_id: str, operation: str) -> tuple[int, int] | None:
        """Get (window_start, count) for a user's operation."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT window_start, count FROM rate_limits WHERE user_id = $1 AND operation = $2",
                user_id,
                operation,
            )
        if not row:
            return None
        return row["window_start"], row["count"]

    async def save_rate_limit(
        self, user_id: str, operation: str, window_start: int, count: int
    ) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO rate_limits (user_id, operation, window_start, count)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id, operation)
                DO UPDATE SET window_start = EXCLUDED.window_start, count = EXCLUDED.count
                """,
                user_id,
                operation,
                window_start,
                count,
            )

    def _decode(self, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else json.loads(value)


# Global database instance
db = Database()
