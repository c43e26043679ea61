"""Binance crypto rate source via ccxt async.

Wraps ccxt.async_support.binance for public kline and ticker endpoints.
Klines are paged forward internally because Binance caps each response at
1000 candles.
"""

import time
from datetime import datetime
from decimal import Decimal

import ccxt.async_support as ccxt_async

from tracker.config import BinanceSettings
from tracker.exceptions import SourceUnavailable, SymbolNotFound
from tracker.logging import get_logger
from tracker.models import CryptoCandle, KlineInterval, to_ms
from tracker.sources.base import CryptoRateSource
from tracker.sources.retry import call_with_retry

logger = get_logger(__name__)


def _to_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


class BinanceRateSource(CryptoRateSource):
    """Concrete crypto source backed by the Binance spot API.

    Pair symbols use the ccxt unified form, e.g. "BTC/USDT".
    """

    def __init__(
        self,
        settings: BinanceSettings,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._settings = settings
        if exchange is None:
            exchange = ccxt_async.binance(
                {
                    "apiKey": settings.api_key.get_secret_value(),
                    "secret": settings.api_secret.get_secret_value(),
                    "enableRateLimit": True,
                    "timeout": settings.timeout_ms,
                    "options": {"defaultType": "spot"},
                }
            )
        self._exchange = exchange

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid leaked sessions."""
        await self._exchange.close()
        logger.info("binance_connection_closed")

    async def fetch_candles(
        self,
        pair_symbol: str,
        interval: KlineInterval,
        start_time: datetime,
        end_time: datetime,
    ) -> list[CryptoCandle]:
        """Fetch candles over [start_time, end_time], paging forward as needed."""
        start_ms = to_ms(start_time)
        end_ms = to_ms(end_time)
        if start_ms > end_ms:
            raise ValueError(
                f"start_time {start_time} is after end_time {end_time}"
            )

        limit = self._settings.page_limit
        by_timestamp: dict[int, CryptoCandle] = {}
        cursor = start_ms
        pages = 0

        while cursor <= end_ms:
            batch = await self._call(
                f"fetch_candles {pair_symbol}",
                self._exchange.fetch_ohlcv,
                pair_symbol,
                timeframe=KlineInterval(interval).value,
                since=cursor,
                limit=limit,
                params={"until": end_ms},
            )
            pages += 1

            if not batch:
                break

            for row in batch:
                if row[0] > end_ms:
                    continue
                by_timestamp[row[0]] = self._parse_kline(pair_symbol, row)

            last_ts = max(row[0] for row in batch)
            if len(batch) < limit or last_ts >= end_ms:
                break
            if last_ts < cursor:
                break  # No progress guard
            cursor = last_ts + 1

        candles = [by_timestamp[ts] for ts in sorted(by_timestamp)]
        logger.debug(
            "candles_fetched",
            symbol=pair_symbol,
            interval=KlineInterval(interval).value,
            count=len(candles),
            pages=pages,
        )
        return candles

    async def current_price(self, pair_symbol: str) -> CryptoCandle:
        """Return the 24h ticker for a pair as a candle stamped now."""
        ticker = await self._call(
            f"current_price {pair_symbol}",
            self._exchange.fetch_ticker,
            pair_symbol,
        )
        if not ticker or ticker.get("last") is None:
            raise SourceUnavailable(f"No ticker data available for {pair_symbol}")

        return CryptoCandle(
            symbol=pair_symbol,
            timestamp_ms=int(time.time() * 1000),
            open=_to_decimal(ticker.get("open")),
            high=_to_decimal(ticker.get("high")),
            low=_to_decimal(ticker.get("low")),
            close=_to_decimal(ticker.get("last")),
            volume=_to_decimal(ticker.get("baseVolume")),
        )

    async def _call(self, operation: str, fetch_fn, *args, **kwargs):  # type: ignore[no-untyped-def]
        """Run a ccxt call with retry on network errors and map exchange errors.

        Unknown symbols fail immediately with SymbolNotFound; any other
        exchange-side rejection is not transient and is surfaced as
        SourceUnavailable without retrying.
        """
        try:
            return await call_with_retry(
                fetch_fn,
                *args,
                operation=operation,
                retry_on=(ccxt_async.NetworkError,),
                max_retries=self._settings.max_retries,
                base_delay=self._settings.retry_base_delay,
                **kwargs,
            )
        except ccxt_async.BadSymbol as e:
            raise SymbolNotFound(f"Unknown trading pair: {args[0]}") from e
        except ccxt_async.ExchangeError as e:
            logger.error("exchange_error", operation=operation, error=str(e))
            raise SourceUnavailable(f"{operation} rejected by exchange: {e}") from e

    @staticmethod
    def _parse_kline(pair_symbol: str, row: list) -> CryptoCandle:
        """Convert a ccxt kline [timestamp_ms, open, high, low, close, volume]."""
        return CryptoCandle(
            symbol=pair_symbol,
            timestamp_ms=int(row[0]),
            open=_to_decimal(row[1]),
            high=_to_decimal(row[2]),
            low=_to_decimal(row[3]),
            close=_to_decimal(row[4]),
            volume=_to_decimal(row[5]),
        )
