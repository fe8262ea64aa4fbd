"""Async SQLite database manager for alert rules and referral rewards.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance. The UNIQUE index on
referral_rewards(referrer_id, referee_id) is what makes reward creation
idempotent; application code relies on it rather than on a prior SELECT.
"""

import asyncio
import os
from typing import Self

import aiosqlite

from fxcore.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS alert_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    base_currency TEXT NOT NULL,
    quote_currency TEXT NOT NULL,
    threshold_rate TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('above', 'below')),
    active INTEGER NOT NULL DEFAULT 1,
    armed INTEGER NOT NULL DEFAULT 1,
    last_triggered_at REAL,
    push_subscription TEXT,
    notified_count INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    email TEXT
);

CREATE TABLE IF NOT EXISTS referrals (
    referee_id TEXT PRIMARY KEY,
    referrer_id TEXT NOT NULL,
    referrer_currency TEXT NOT NULL,
    first_transaction_id TEXT,
    first_transaction_at REAL,
    first_transaction_amount TEXT,
    first_transaction_currency TEXT,
    created_at REAL NOT NULL,
    CHECK (referee_id <> referrer_id)
);

CREATE TABLE IF NOT EXISTS referral_rewards (
    id TEXT PRIMARY KEY,
    referrer_id TEXT NOT NULL,
    referee_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'credited', 'failed')),
    transaction_id TEXT NOT NULL,
    created_at REAL NOT NULL,
    credited_at REAL,
    failure_reason TEXT,
    attempts INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_reward_referrer_referee
    ON referral_rewards(referrer_id, referee_id);

CREATE INDEX IF NOT EXISTS idx_rules_active
    ON alert_rules(active);

CREATE INDEX IF NOT EXISTS idx_rules_user
    ON alert_rules(user_id);

CREATE INDEX IF NOT EXISTS idx_rewards_status
    ON referral_rewards(status);
"""


class Database:
    """Async SQLite connection manager.

    A single aiosqlite connection is shared by all stores. Writes go through
    execute_write(), which serializes statement + commit with an asyncio.Lock
    so one coroutine never commits another one's half-finished write.

    Usage:
        async with Database("data/fxcore.db") as database:
            rules = AlertRuleStore(database)
    """

    def __init__(self, db_path: str = "data/fxcore.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        if self._db_path != ":memory:":
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("database_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", db_path=self._db_path)

    async def execute_write(self, sql: str, params: tuple = ()) -> int:
        """Execute a single write statement and commit. Returns rowcount."""
        async with self._write_lock:
            try:
                cursor = await self.db.execute(sql, params)
            except Exception:
                await self.db.rollback()
                raise
            await self.db.commit()
            return cursor.rowcount

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
