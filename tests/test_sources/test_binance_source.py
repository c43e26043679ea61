"""Tests for BinanceRateSource.

The ccxt exchange is replaced by an AsyncMock so no network calls are made.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import ccxt.async_support as ccxt_async
import pytest

from tracker.config import BinanceSettings
from tracker.exceptions import SourceUnavailable, SymbolNotFound
from tracker.models import KlineInterval, to_ms
from tracker.sources.binance_source import BinanceRateSource

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR_MS = 3_600_000


def _row(ts_ms: int, close: float = 42000.5) -> list:
    return [ts_ms, 42000.0, 42100.0, 41900.0, close, 12.5]


@pytest.fixture
def settings() -> BinanceSettings:
    return BinanceSettings(page_limit=3, max_retries=3, retry_base_delay=0.0)


@pytest.fixture
def exchange() -> AsyncMock:
    return AsyncMock()


class TestFetchCandles:
    @pytest.mark.asyncio
    async def test_single_page(self, settings: BinanceSettings, exchange: AsyncMock) -> None:
        start_ms = to_ms(START)
        exchange.fetch_ohlcv = AsyncMock(return_value=[_row(start_ms), _row(start_ms + HOUR_MS)])
        source = BinanceRateSource(settings, exchange=exchange)

        candles = await source.fetch_candles(
            "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=5)
        )

        assert [c.timestamp_ms for c in candles] == [start_ms, start_ms + HOUR_MS]
        assert candles[0].symbol == "BTC/USDT"
        assert candles[0].close == Decimal("42000.5")
        assert candles[0].volume == Decimal("12.5")
        exchange.fetch_ohlcv.assert_awaited_once_with(
            "BTC/USDT",
            timeframe="1h",
            since=start_ms,
            limit=3,
            params={"until": to_ms(START + timedelta(hours=5))},
        )

    @pytest.mark.asyncio
    async def test_pages_forward_until_short_page(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        start_ms = to_ms(START)
        page1 = [_row(start_ms + i * HOUR_MS) for i in range(3)]
        page2 = [_row(start_ms + i * HOUR_MS) for i in range(3, 5)]
        exchange.fetch_ohlcv = AsyncMock(side_effect=[page1, page2])
        source = BinanceRateSource(settings, exchange=exchange)

        candles = await source.fetch_candles(
            "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=10)
        )

        assert len(candles) == 5
        assert exchange.fetch_ohlcv.await_count == 2
        second_call = exchange.fetch_ohlcv.call_args_list[1]
        assert second_call.kwargs["since"] == start_ms + 2 * HOUR_MS + 1

    @pytest.mark.asyncio
    async def test_drops_candles_after_end_and_dedupes(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        start_ms = to_ms(START)
        exchange.fetch_ohlcv = AsyncMock(
            return_value=[_row(start_ms), _row(start_ms), _row(start_ms + 5 * HOUR_MS)]
        )
        source = BinanceRateSource(settings, exchange=exchange)

        candles = await source.fetch_candles(
            "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=2)
        )

        assert [c.timestamp_ms for c in candles] == [start_ms]

    @pytest.mark.asyncio
    async def test_start_after_end_raises(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        source = BinanceRateSource(settings, exchange=exchange)

        with pytest.raises(ValueError):
            await source.fetch_candles(
                "BTC/USDT", KlineInterval.ONE_HOUR, START, START - timedelta(hours=1)
            )
        exchange.fetch_ohlcv.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_result(self, settings: BinanceSettings, exchange: AsyncMock) -> None:
        exchange.fetch_ohlcv = AsyncMock(return_value=[])
        source = BinanceRateSource(settings, exchange=exchange)

        candles = await source.fetch_candles(
            "BTC/USDT", KlineInterval.ONE_DAY, START, START + timedelta(days=3)
        )

        assert candles == []


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_network_error_retried_then_succeeds(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        exchange.fetch_ohlcv = AsyncMock(
            side_effect=[ccxt_async.NetworkError("timeout"), [_row(to_ms(START))]]
        )
        source = BinanceRateSource(settings, exchange=exchange)

        candles = await source.fetch_candles(
            "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=1)
        )

        assert len(candles) == 1
        assert exchange.fetch_ohlcv.await_count == 2

    @pytest.mark.asyncio
    async def test_network_error_exhausts_retries(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        exchange.fetch_ohlcv = AsyncMock(side_effect=ccxt_async.NetworkError("down"))
        source = BinanceRateSource(settings, exchange=exchange)

        with pytest.raises(SourceUnavailable) as exc_info:
            await source.fetch_candles(
                "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=1)
            )

        assert exchange.fetch_ohlcv.await_count == 3
        assert isinstance(exc_info.value.__cause__, ccxt_async.NetworkError)

    @pytest.mark.asyncio
    async def test_bad_symbol_not_retried(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        exchange.fetch_ohlcv = AsyncMock(side_effect=ccxt_async.BadSymbol("binance does not have market symbol"))
        source = BinanceRateSource(settings, exchange=exchange)

        with pytest.raises(SymbolNotFound):
            await source.fetch_candles(
                "FOO/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=1)
            )

        assert exchange.fetch_ohlcv.await_count == 1

    @pytest.mark.asyncio
    async def test_exchange_error_maps_to_unavailable(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        exchange.fetch_ohlcv = AsyncMock(side_effect=ccxt_async.ExchangeError("rejected"))
        source = BinanceRateSource(settings, exchange=exchange)

        with pytest.raises(SourceUnavailable):
            await source.fetch_candles(
                "BTC/USDT", KlineInterval.ONE_HOUR, START, START + timedelta(hours=1)
            )

        assert exchange.fetch_ohlcv.await_count == 1


class TestCurrentPrice:
    @pytest.mark.asyncio
    async def test_ticker_to_candle(self, settings: BinanceSettings, exchange: AsyncMock) -> None:
        exchange.fetch_ticker = AsyncMock(
            return_value={
                "open": 41000.0,
                "high": 43000.0,
                "low": 40500.0,
                "last": 42500.25,
                "baseVolume": 1234.5,
            }
        )
        source = BinanceRateSource(settings, exchange=exchange)

        candle = await source.current_price("BTC/USDT")

        assert candle.symbol == "BTC/USDT"
        assert candle.open == Decimal("41000.0")
        assert candle.close == Decimal("42500.25")
        assert candle.volume == Decimal("1234.5")
        assert candle.timestamp_ms > 0

    @pytest.mark.asyncio
    async def test_missing_last_price_raises(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        exchange.fetch_ticker = AsyncMock(return_value={"last": None})
        source = BinanceRateSource(settings, exchange=exchange)

        with pytest.raises(SourceUnavailable):
            await source.current_price("BTC/USDT")

    @pytest.mark.asyncio
    async def test_close_closes_exchange(
        self, settings: BinanceSettings, exchange: AsyncMock
    ) -> None:
        source = BinanceRateSource(settings, exchange=exchange)

        await source.close()

        exchange.close.assert_awaited_once()
