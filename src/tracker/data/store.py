"""Typed SQLite read/write abstraction for cached fiat and crypto rates.

RateStore is the cache contract shared by the schedulers and request-driven
synthesis. Writes are upserts keyed on (date, currency_code) and
(symbol, interval, timestamp_ms): replaying the same rows overwrites value
fields and never duplicates.

Decimal values are stored as TEXT and restored as Decimal on read.
"""

import asyncio
import time
from datetime import date, datetime
from decimal import Decimal

from tracker.data.database import RatesDatabase
from tracker.exceptions import CurrencyNotFound
from tracker.logging import get_logger
from tracker.models import CryptoCandle, FiatRate, KlineInterval, to_ms

logger = get_logger(__name__)

_FIAT_COLUMNS = "date, currency_code, currency_name, nominal, value, previous"
_CRYPTO_COLUMNS = "symbol, timestamp_ms, open, high, low, close, volume"


def _interval_key(interval: KlineInterval | str) -> str:
    if isinstance(interval, KlineInterval):
        return interval.value
    return interval


def _fiat_from_row(row) -> FiatRate:  # type: ignore[no-untyped-def]
    return FiatRate(
        date=date.fromisoformat(row[0]),
        code=row[1],
        name=row[2],
        nominal=row[3],
        value=Decimal(row[4]),
        previous=Decimal(row[5]) if row[5] is not None else Decimal("0"),
    )


def _crypto_from_row(row) -> CryptoCandle:  # type: ignore[no-untyped-def]
    return CryptoCandle(
        symbol=row[0],
        timestamp_ms=row[1],
        open=Decimal(row[2]),
        high=Decimal(row[3]),
        low=Decimal(row[4]),
        close=Decimal(row[5]),
        volume=Decimal(row[6]),
    )


class RateStore:
    """Async SQLite store for fiat rate rows and crypto rate rows.

    The write lock only covers a single executemany + commit; no caller holds
    it across an upstream request.

    Usage:
        async with RatesDatabase("data/rates.db") as database:
            store = RateStore(database)
            await store.upsert_fiat_rates(rates)
    """

    def __init__(self, database: RatesDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def upsert_fiat_rates(self, rates: list[FiatRate]) -> int:
        """Insert or overwrite fiat rows keyed on (date, currency_code).

        Returns the number of rows written.
        """
        if not rates:
            return 0

        now_ms = int(time.time() * 1000)
        data = [
            (
                r.date.isoformat(),
                r.code,
                r.name,
                r.nominal,
                str(r.value),
                str(r.previous),
                now_ms,
            )
            for r in rates
        ]

        async with self._write_lock:
            await self._database.db.executemany(
                f"INSERT INTO fiat_rates ({_FIAT_COLUMNS}, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (date, currency_code) DO UPDATE SET "
                "currency_name = excluded.currency_name, "
                "nominal = excluded.nominal, "
                "value = excluded.value, "
                "previous = excluded.previous, "
                "updated_at = excluded.updated_at",
                data,
            )
            await self._database.db.commit()

        logger.debug("upserted_fiat_rates", count=len(data))
        return len(data)

    async def upsert_crypto_rates(
        self, candles: list[CryptoCandle], interval: KlineInterval | str
    ) -> int:
        """Insert or overwrite crypto rows keyed on (symbol, interval, timestamp_ms).

        ``interval`` separates candle series of different resolutions, and
        ticker snapshots (``TICKER_SNAPSHOT``) from both.

        Returns the number of rows written.
        """
        if not candles:
            return 0

        key = _interval_key(interval)
        now_ms = int(time.time() * 1000)
        data = [
            (
                c.symbol,
                key,
                c.timestamp_ms,
                str(c.open),
                str(c.high),
                str(c.low),
                str(c.close),
                str(c.volume),
                now_ms,
            )
            for c in candles
        ]

        async with self._write_lock:
            await self._database.db.executemany(
                "INSERT INTO crypto_rates "
                "(symbol, interval, timestamp_ms, open, high, low, close, volume, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (symbol, interval, timestamp_ms) DO UPDATE SET "
                "open = excluded.open, "
                "high = excluded.high, "
                "low = excluded.low, "
                "close = excluded.close, "
                "volume = excluded.volume, "
                "updated_at = excluded.updated_at",
                data,
            )
            await self._database.db.commit()

        logger.debug("upserted_crypto_rates", interval=key, count=len(data))
        return len(data)

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def query_fiat_by_date(self, day: date) -> list[FiatRate]:
        """All fiat rows for a day, ordered by currency code."""
        cursor = await self._database.db.execute(
            f"SELECT {_FIAT_COLUMNS} FROM fiat_rates WHERE date = ? "
            "ORDER BY currency_code",
            (day.isoformat(),),
        )
        rows = await cursor.fetchall()
        return [_fiat_from_row(row) for row in rows]

    async def query_fiat_by_code_and_date(self, code: str, day: date) -> FiatRate:
        """A single fiat row.

        Raises:
            CurrencyNotFound: If no row exists for (day, code).
        """
        cursor = await self._database.db.execute(
            f"SELECT {_FIAT_COLUMNS} FROM fiat_rates "
            "WHERE currency_code = ? AND date = ?",
            (code.upper(), day.isoformat()),
        )
        row = await cursor.fetchone()
        if row is None:
            raise CurrencyNotFound(f"currency rate {code} for {day} not found")
        return _fiat_from_row(row)

    async def query_fiat_by_code_and_range(
        self, code: str, start: date, end: date
    ) -> list[FiatRate]:
        """Fiat rows for one currency over [start, end], ordered by date."""
        cursor = await self._database.db.execute(
            f"SELECT {_FIAT_COLUMNS} FROM fiat_rates "
            "WHERE currency_code = ? AND date >= ? AND date <= ? ORDER BY date ASC",
            (code.upper(), start.isoformat(), end.isoformat()),
        )
        rows = await cursor.fetchall()
        return [_fiat_from_row(row) for row in rows]

    async def query_crypto_by_range(
        self,
        symbol: str,
        interval: KlineInterval | str,
        start: datetime,
        end: datetime,
    ) -> list[CryptoCandle]:
        """Crypto rows for a symbol and interval over [start, end], ordered by timestamp."""
        cursor = await self._database.db.execute(
            f"SELECT {_CRYPTO_COLUMNS} FROM crypto_rates "
            "WHERE symbol = ? AND interval = ? AND timestamp_ms >= ? AND timestamp_ms <= ? "
            "ORDER BY timestamp_ms ASC",
            (symbol, _interval_key(interval), to_ms(start), to_ms(end)),
        )
        rows = await cursor.fetchall()
        return [_crypto_from_row(row) for row in rows]

    async def mark_fiat_days_unavailable(self, served: dict[date, date]) -> int:
        """Record archive days the fiat feed has no table for.

        ``served`` maps each missing day to the date of the table the feed
        returned in its place.
        """
        if not served:
            return 0

        now_ms = int(time.time() * 1000)
        data = [
            (day.isoformat(), served_date.isoformat(), now_ms)
            for day, served_date in served.items()
        ]

        async with self._write_lock:
            await self._database.db.executemany(
                "INSERT INTO fiat_unavailable_days (date, served_date, updated_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT (date) DO UPDATE SET "
                "served_date = excluded.served_date, "
                "updated_at = excluded.updated_at",
                data,
            )
            await self._database.db.commit()

        logger.debug("marked_fiat_days_unavailable", count=len(data))
        return len(data)

    async def query_fiat_unavailable_days(self, start: date, end: date) -> set[date]:
        """Days in [start, end] known to have no fiat table of their own."""
        cursor = await self._database.db.execute(
            "SELECT date FROM fiat_unavailable_days WHERE date >= ? AND date <= ?",
            (start.isoformat(), end.isoformat()),
        )
        rows = await cursor.fetchall()
        return {date.fromisoformat(row[0]) for row in rows}

    async def list_available_symbols(self) -> list[str]:
        """Distinct crypto base symbols with cached rows (e.g. "BTC" for "BTC/RUB")."""
        cursor = await self._database.db.execute(
            "SELECT DISTINCT symbol FROM crypto_rates ORDER BY symbol"
        )
        rows = await cursor.fetchall()
        symbols: list[str] = []
        for (symbol,) in rows:
            base = symbol.split("/")[0]
            if base not in symbols:
                symbols.append(base)
        return symbols

    async def list_available_dates(self, limit: int = 30) -> list[date]:
        """Most recent days with cached fiat rows, newest first."""
        cursor = await self._database.db.execute(
            "SELECT DISTINCT date FROM fiat_rates ORDER BY date DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [date.fromisoformat(row[0]) for row in rows]

    async def get_data_status(self) -> dict:
        """Aggregate row counts and coverage for the /info endpoint."""
        db = self._database.db

        cursor = await db.execute("SELECT COUNT(*), MIN(date), MAX(date) FROM fiat_rates")
        fiat_rows, earliest_date, latest_date = await cursor.fetchone()

        cursor = await db.execute(
            "SELECT COUNT(*), COUNT(DISTINCT symbol), MAX(updated_at) FROM crypto_rates"
        )
        crypto_rows, crypto_symbols, last_crypto_update_ms = await cursor.fetchone()

        return {
            "fiat_rows": fiat_rows,
            "fiat_earliest_date": earliest_date,
            "fiat_latest_date": latest_date,
            "crypto_rows": crypto_rows,
            "crypto_symbols": crypto_symbols,
            "last_crypto_update_ms": last_crypto_update_ms,
        }
