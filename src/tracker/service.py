"""Cache-through rate lookups backing the HTTP API.

Every read goes to the store first. On a miss the service fetches (fiat) or
synthesizes (crypto) upstream, upserts what it got, and returns it. A crypto
read is a hit only when the cached series for the requested interval spans
the whole window.
"""

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone

from tracker.config import AppSettings
from tracker.data.store import RateStore
from tracker.exceptions import CurrencyNotFound, InvalidRequest, StoreError, TrackerError
from tracker.logging import get_logger
from tracker.models import CryptoCandle, FiatRate, FiatRateTable, KlineInterval, select_interval
from tracker.sources.base import FiatRateSource
from tracker.synthesis.synthesizer import RateSynthesizer

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require(value: str, name: str) -> str:
    value = (value or "").strip().upper()
    if not value:
        raise InvalidRequest(f"{name} parameter is required")
    return value


def _covers(
    candles: list[CryptoCandle],
    interval: KlineInterval,
    start_time: datetime,
    end_time: datetime,
) -> bool:
    """True when cached candles reach within one candle of both window ends."""
    if not candles:
        return False
    step = interval.duration
    return (
        candles[0].timestamp <= start_time + step
        and candles[-1].timestamp >= end_time - step
    )


class RateService:
    """Rate lookups with the store as a read-through cache.

    Usage:
        service = RateService(store, cbr, synthesizer, settings)
        table = await service.fiat_day(date(2024, 1, 9))
        history = await service.crypto_history("BTC", days=30)
    """

    def __init__(
        self,
        store: RateStore,
        fiat_source: FiatRateSource,
        synthesizer: RateSynthesizer,
        settings: AppSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._fiat = fiat_source
        self._synthesizer = synthesizer
        self._settings = settings
        self._clock = clock

    @property
    def fiat_code(self) -> str:
        return self._settings.synthesis.fiat_code

    def today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    # ──────────────────────────────────────────────
    # Fiat rates
    # ──────────────────────────────────────────────

    async def fiat_day(self, day: date | None = None) -> FiatRateTable:
        """Full fiat table for ``day`` (today when None)."""
        day = day or self.today()
        cached = await self._store.query_fiat_by_date(day)
        if cached:
            return FiatRateTable(date=day, rates={r.code: r for r in cached})

        table = await self._fiat.fetch_day(day)
        await self._save_fiat(list(table.rates.values()))
        return table

    async def fiat_currency(self, code: str, day: date | None = None) -> FiatRate:
        """One currency's rate for ``day`` (today when None).

        Raises:
            InvalidRequest: If ``code`` is empty.
            CurrencyNotFound: If the day's table has no such currency.
        """
        code = _require(code, "code")
        day = day or self.today()
        try:
            return await self._store.query_fiat_by_code_and_date(code, day)
        except CurrencyNotFound:
            pass

        table = await self.fiat_day(day)
        rate = table.rates.get(code)
        if rate is None:
            raise CurrencyNotFound(f"currency {code} not found for {table.date}")
        return rate

    async def fiat_history(self, code: str, days: int) -> list[FiatRate]:
        """Daily rates for the last ``days`` days, today included."""
        if days <= 0:
            raise InvalidRequest("days must be positive")
        days = min(days, self._settings.api.max_lookback_days)
        end = self.today()
        return await self.fiat_history_range(code, end - timedelta(days=days - 1), end)

    async def fiat_history_range(self, code: str, start: date, end: date) -> list[FiatRate]:
        """Daily rates for one currency over [start, end], oldest first.

        Days missing from the store are fetched upstream. Days the feed has
        no table for (weekends, holidays) are left out and remembered, so a
        repeated range is served without upstream calls.
        """
        code = _require(code, "code")
        self._check_date_range(start, end)

        rows = await self._store.query_fiat_by_code_and_range(code, start, end)
        cached = {r.date: r for r in rows}
        unavailable = await self._store.query_fiat_unavailable_days(start, end)
        all_days = [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
        missing = [day for day in all_days if day not in cached and day not in unavailable]
        if not missing:
            return [cached[day] for day in sorted(cached)]

        fetched = await self._fetch_fiat_days(missing)

        # A substituted table is still valid data for its own date
        to_save = {
            (rate.date, rate.code): rate for _, table in fetched for rate in table.rates.values()
        }
        await self._save_fiat(list(to_save.values()))

        # The archive skips a day for good only once a later table exists
        skipped = {day: table.date for day, table in fetched if table.date > day}
        if skipped:
            try:
                await self._store.mark_fiat_days_unavailable(skipped)
            except sqlite3.Error as e:
                raise StoreError(f"failed to record unavailable fiat days: {e}") from e

        for _, table in fetched:
            rate = table.rates.get(code)
            if rate is not None and start <= table.date <= end:
                cached[table.date] = rate

        return [cached[day] for day in sorted(cached)]

    async def available_dates(self, limit: int = 30) -> list[date]:
        return await self._store.list_available_dates(limit)

    async def _fetch_fiat_days(self, days: list[date]) -> list[tuple[date, FiatRateTable]]:
        """Fetch each day's table, paired with the day asked for. Failed days are dropped."""
        semaphore = asyncio.Semaphore(max(1, self._settings.synthesis.fallback_concurrency))

        async def fetch(day: date) -> tuple[date, FiatRateTable] | None:
            async with semaphore:
                try:
                    table = await self._fiat.fetch_day(day)
                except TrackerError as e:
                    logger.warning("fiat_history_day_failed", date=day.isoformat(), error=str(e))
                    return None
            return day, table

        results = await asyncio.gather(*(fetch(day) for day in days))
        return [result for result in results if result is not None]

    # ──────────────────────────────────────────────
    # Crypto rates
    # ──────────────────────────────────────────────

    async def crypto_symbols(self) -> list[str]:
        """Symbols with cached rows, or the configured refresh list when empty."""
        symbols = await self._store.list_available_symbols()
        return symbols or list(self._settings.scheduler.crypto_symbols)

    async def crypto_rate_at(self, symbol: str, moment: datetime) -> CryptoCandle:
        """Synthesized rate nearest to ``moment``. Not cached."""
        symbol = _require(symbol, "symbol")
        return await self._synthesizer.synthesize_at(symbol, self.fiat_code, moment)

    async def crypto_history(self, symbol: str, days: int) -> list[CryptoCandle]:
        """Synthesized history for the last ``days`` days.

        Raises:
            InvalidRequest: If ``symbol`` is empty or ``days`` is not positive.
        """
        symbol = _require(symbol, "symbol")
        if days <= 0:
            raise InvalidRequest("days must be positive")
        days = min(days, self._settings.api.max_lookback_days)

        end_time = self._clock()
        start_time = end_time - timedelta(days=days)
        return await self._crypto_range(symbol, select_interval(days), start_time, end_time)

    async def crypto_history_range(
        self, symbol: str, start: date, end: date
    ) -> list[CryptoCandle]:
        """Synthesized history over whole days [start, end], end day included."""
        symbol = _require(symbol, "symbol")
        self._check_date_range(start, end)

        days = (end - start).days + 1
        start_time = datetime.combine(start, time.min, tzinfo=timezone.utc)
        end_time = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        end_time -= timedelta(milliseconds=1)
        return await self._crypto_range(symbol, select_interval(days), start_time, end_time)

    async def _crypto_range(
        self,
        symbol: str,
        interval: KlineInterval,
        start_time: datetime,
        end_time: datetime,
    ) -> list[CryptoCandle]:
        stored_symbol = RateSynthesizer.output_symbol(symbol, self.fiat_code)
        cached = await self._store.query_crypto_by_range(
            stored_symbol, interval, start_time, end_time
        )
        if _covers(cached, interval, start_time, end_time):
            logger.debug(
                "crypto_history_cache_hit",
                symbol=stored_symbol,
                interval=interval.value,
                count=len(cached),
            )
            return cached

        candles = await self._synthesizer.synthesize_range(
            symbol, self.fiat_code, interval, start_time, end_time
        )
        try:
            await self._store.upsert_crypto_rates(candles, interval)
        except sqlite3.Error as e:
            raise StoreError(f"failed to cache {stored_symbol} rates: {e}") from e
        return candles

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    async def data_status(self) -> dict:
        return await self._store.get_data_status()

    async def _save_fiat(self, rates: list[FiatRate]) -> None:
        try:
            await self._store.upsert_fiat_rates(rates)
        except sqlite3.Error as e:
            raise StoreError(f"failed to cache fiat rates: {e}") from e

    def _check_date_range(self, start: date, end: date) -> None:
        if start > end:
            raise InvalidRequest("start_date must not be after end_date")
        max_days = self._settings.api.max_lookback_days
        if (end - start).days + 1 > max_days:
            raise InvalidRequest(f"date range must not exceed {max_days} days")
