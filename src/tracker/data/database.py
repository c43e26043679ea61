"""Async SQLite database manager for the rate cache.

Uses aiosqlite for non-blocking database operations with WAL mode so the
schedulers and request handlers can read while another writer commits.
"""

import os
from typing import Self

import aiosqlite

from tracker.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS fiat_rates (
    date TEXT NOT NULL,
    currency_code TEXT NOT NULL,
    currency_name TEXT NOT NULL,
    nominal INTEGER NOT NULL,
    value TEXT NOT NULL,
    previous TEXT,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (date, currency_code)
);

CREATE TABLE IF NOT EXISTS crypto_rates (
    symbol TEXT NOT NULL,
    interval TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (symbol, interval, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS fiat_unavailable_days (
    date TEXT PRIMARY KEY,
    served_date TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_fiat_rates_code
    ON fiat_rates(currency_code, date);

CREATE INDEX IF NOT EXISTS idx_crypto_rates_symbol_ts
    ON crypto_rates(symbol, interval, timestamp_ms);
"""


class RatesDatabase:
    """Async SQLite connection manager for cached rates.

    Usage:
        async with RatesDatabase("data/rates.db") as db:
            store = RateStore(db)

        # Manual lifecycle
        db = RatesDatabase("data/rates.db")
        await db.connect()
        try:
            ...
        finally:
            await db.close()
    """

    def __init__(self, db_path: str = "data/rates.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("rates_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("rates_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        await self.db.executescript(_CREATE_TABLES_SQL)
        await self.db.executescript(_CREATE_INDEXES_SQL)
        await self.db.commit()

    async def _ensure_schema_version(self) -> None:
        cursor = await self.db.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self.db.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
