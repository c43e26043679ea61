"""Tests for RateSynthesizer.

Both sources are AsyncMocks; pair routing is done by a side_effect keyed
on the requested pair symbol.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tracker.config import SynthesisSettings
from tracker.exceptions import (
    CurrencyNotFound,
    NoFallbackData,
    NoMarketData,
    SourceUnavailable,
    SymbolNotFound,
)
from tracker.models import CryptoCandle, FiatRate, KlineInterval, to_ms
from tracker.synthesis.synthesizer import RateSynthesizer

T0 = datetime(2024, 1, 9, 12, 0, tzinfo=timezone.utc)


def _candle(ts: datetime, o: str, h: str, low: str, c: str, v: str, symbol: str) -> CryptoCandle:
    return CryptoCandle(
        symbol=symbol,
        timestamp_ms=to_ms(ts),
        open=Decimal(o),
        high=Decimal(h),
        low=Decimal(low),
        close=Decimal(c),
        volume=Decimal(v),
    )


def _btc(ts: datetime = T0) -> CryptoCandle:
    return _candle(ts, "100", "110", "90", "105", "10", "BTC/USDT")


def _usdt_rub(ts: datetime = T0) -> CryptoCandle:
    return _candle(ts, "90", "92", "88", "91", "1000", "USDT/RUB")


def _usd(day: date, value: str = "90.0") -> FiatRate:
    return FiatRate(day, "USD", "US Dollar", 1, Decimal(value), Decimal(value))


def _crypto_source(legs: dict) -> AsyncMock:
    """Mock crypto source; ``legs`` maps pair -> candles or an exception."""

    async def fetch_candles(pair, interval, start, end):  # type: ignore[no-untyped-def]
        leg = legs.get(pair, [])
        if isinstance(leg, Exception):
            raise leg
        return leg

    source = AsyncMock()
    source.fetch_candles = AsyncMock(side_effect=fetch_candles)
    return source


@pytest.fixture
def settings() -> SynthesisSettings:
    return SynthesisSettings()


# ---------------------------------------------------------------------------
# synthesize_at
# ---------------------------------------------------------------------------


class TestSynthesizeAt:
    @pytest.mark.asyncio
    async def test_both_legs_multiply_elementwise(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source({"BTC/USDT": [_btc()], "USDT/RUB": [_usdt_rub()]})
        fiat = AsyncMock()
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_at("BTC", "RUB", T0)

        assert result.symbol == "BTC/RUB"
        assert result.timestamp_ms == to_ms(T0)
        assert (result.open, result.high, result.low, result.close) == (
            Decimal("9000"),
            Decimal("10120"),
            Decimal("7920"),
            Decimal("9555"),
        )
        assert result.volume == Decimal("10")
        fiat.fetch_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_uses_nearest_candle_of_each_leg(self, settings: SynthesisSettings) -> None:
        crypto_leg = [
            _candle(T0 - timedelta(hours=1), "1", "1", "1", "1", "1", "BTC/USDT"),
            _btc(T0),
            _candle(T0 + timedelta(hours=1), "2", "2", "2", "2", "2", "BTC/USDT"),
        ]
        fiat_leg = [_usdt_rub(T0 + timedelta(minutes=10))]
        crypto = _crypto_source({"BTC/USDT": crypto_leg, "USDT/RUB": fiat_leg})
        synth = RateSynthesizer(crypto, AsyncMock(), settings)

        result = await synth.synthesize_at("btc", "rub", T0)

        assert result.close == Decimal("9555")
        assert result.volume == Decimal("10")

    @pytest.mark.asyncio
    async def test_queries_hourly_window_around_timestamp(
        self, settings: SynthesisSettings
    ) -> None:
        crypto = _crypto_source({"BTC/USDT": [_btc()], "USDT/RUB": [_usdt_rub()]})
        synth = RateSynthesizer(crypto, AsyncMock(), settings)

        await synth.synthesize_at("BTC", "RUB", T0)

        pair, interval, start, end = crypto.fetch_candles.call_args_list[0].args
        assert pair == "BTC/USDT"
        assert interval is KlineInterval.ONE_HOUR
        assert start == T0 - timedelta(hours=1)
        assert end == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_fallback_to_fiat_feed_scalar(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source({"BTC/USDT": [_btc()], "USDT/RUB": []})
        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(return_value=_usd(T0.date()))
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_at("BTC", "RUB", T0)

        assert (result.open, result.high, result.low, result.close) == (
            Decimal("9000"),
            Decimal("9900"),
            Decimal("8100"),
            Decimal("9450"),
        )
        assert result.volume == Decimal("10")
        fiat.fetch_one.assert_awaited_once_with("USD", T0.date())

    @pytest.mark.asyncio
    async def test_fallback_when_fiat_leg_errors(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source(
            {"BTC/USDT": [_btc()], "USDT/RUB": SymbolNotFound("Unknown trading pair")}
        )
        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(return_value=_usd(T0.date()))
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_at("BTC", "RUB", T0)

        assert result.close == Decimal("9450")

    @pytest.mark.asyncio
    async def test_no_crypto_leg_raises(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source({"BTC/USDT": []})
        synth = RateSynthesizer(crypto, AsyncMock(), settings)

        with pytest.raises(NoMarketData):
            await synth.synthesize_at("BTC", "RUB", T0)

    @pytest.mark.asyncio
    async def test_both_fiat_routes_fail(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source({"BTC/USDT": [_btc()], "USDT/RUB": []})
        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(side_effect=CurrencyNotFound("currency with code USD not found"))
        synth = RateSynthesizer(crypto, fiat, settings)

        with pytest.raises(NoFallbackData) as exc_info:
            await synth.synthesize_at("BTC", "RUB", T0)
        assert isinstance(exc_info.value.__cause__, CurrencyNotFound)


# ---------------------------------------------------------------------------
# synthesize_current
# ---------------------------------------------------------------------------


class TestSynthesizeCurrent:
    @pytest.mark.asyncio
    async def test_scales_ticker_by_latest_reference_rate(
        self, settings: SynthesisSettings
    ) -> None:
        crypto = AsyncMock()
        crypto.current_price = AsyncMock(return_value=_btc())
        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(return_value=_usd(T0.date()))
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_current("ETH", "RUB")

        assert result.symbol == "ETH/RUB"
        assert result.close == Decimal("9450")
        crypto.current_price.assert_awaited_once_with("ETH/USDT")
        fiat.fetch_one.assert_awaited_once_with("USD")

    @pytest.mark.asyncio
    async def test_zero_reference_rate_raises(self, settings: SynthesisSettings) -> None:
        crypto = AsyncMock()
        crypto.current_price = AsyncMock(return_value=_btc())
        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(return_value=_usd(T0.date(), "0"))
        synth = RateSynthesizer(crypto, fiat, settings)

        with pytest.raises(NoFallbackData):
            await synth.synthesize_current("BTC", "RUB")


# ---------------------------------------------------------------------------
# synthesize_range
# ---------------------------------------------------------------------------


class TestSynthesizeRange:
    @pytest.mark.asyncio
    async def test_series_route_drops_candles_beyond_tolerance(
        self, settings: SynthesisSettings
    ) -> None:
        crypto_leg = [_btc(T0 + timedelta(hours=i)) for i in range(6)]
        fiat_leg = [_usdt_rub(T0), _usdt_rub(T0 + timedelta(hours=1))]
        crypto = _crypto_source({"BTC/USDT": crypto_leg, "USDT/RUB": fiat_leg})
        fiat = AsyncMock()
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_range(
            "BTC", "RUB", KlineInterval.ONE_HOUR, T0, T0 + timedelta(hours=5)
        )

        # T0..T0+2h are within an hour of a fiat candle; T0+3h onward are not
        assert [c.timestamp_ms for c in result] == [
            to_ms(T0 + timedelta(hours=i)) for i in range(3)
        ]
        assert all(c.symbol == "BTC/RUB" for c in result)
        fiat.fetch_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_crypto_leg_raises(self, settings: SynthesisSettings) -> None:
        crypto = _crypto_source({"BTC/USDT": []})
        synth = RateSynthesizer(crypto, AsyncMock(), settings)

        with pytest.raises(NoMarketData):
            await synth.synthesize_range(
                "BTC", "RUB", KlineInterval.ONE_DAY, T0, T0 + timedelta(days=3)
            )

    @pytest.mark.asyncio
    async def test_day_scalar_fallback(self, settings: SynthesisSettings) -> None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        crypto_leg = [_btc(start + timedelta(days=i)) for i in range(4)]
        crypto = _crypto_source({"BTC/USDT": crypto_leg, "USDT/RUB": []})

        async def fetch_one(code, day):  # type: ignore[no-untyped-def]
            if day == date(2024, 1, 3):
                raise SourceUnavailable("archive unreachable")
            return _usd(day, "90.0" if day.day < 3 else "100.0")

        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(side_effect=fetch_one)
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_range(
            "BTC", "RUB", KlineInterval.ONE_DAY, start, start + timedelta(days=3)
        )

        assert len(result) == 4
        assert [c.close for c in result] == [
            Decimal("9450"),
            Decimal("9450"),
            Decimal("9450"),  # Jan 3 failed, borrows Jan 2 (tie prefers earlier)
            Decimal("10500"),
        ]
        assert fiat.fetch_one.await_count == 4

    @pytest.mark.asyncio
    async def test_fallback_ignores_substituted_days(self, settings: SynthesisSettings) -> None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        crypto = _crypto_source({"BTC/USDT": [_btc(start)], "USDT/RUB": []})
        fiat = AsyncMock()
        # Every archive day is missing, the feed serves a later table instead
        fiat.fetch_one = AsyncMock(return_value=_usd(date(2024, 3, 1)))
        synth = RateSynthesizer(crypto, fiat, settings)

        with pytest.raises(NoFallbackData):
            await synth.synthesize_range(
                "BTC", "RUB", KlineInterval.ONE_DAY, start, start + timedelta(days=1)
            )

    @pytest.mark.asyncio
    async def test_fallback_limited_to_seven_days(self, settings: SynthesisSettings) -> None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        crypto_leg = [_btc(start + timedelta(days=i)) for i in range(10)]
        crypto = _crypto_source({"BTC/USDT": crypto_leg, "USDT/RUB": []})

        async def fetch_one(code, day):  # type: ignore[no-untyped-def]
            if day != date(2024, 1, 1):
                raise CurrencyNotFound("missing")
            return _usd(day)

        fiat = AsyncMock()
        fiat.fetch_one = AsyncMock(side_effect=fetch_one)
        synth = RateSynthesizer(crypto, fiat, settings)

        result = await synth.synthesize_range(
            "BTC", "RUB", KlineInterval.ONE_DAY, start, start + timedelta(days=9)
        )

        # Jan 1..Jan 8 are within 7 days of Jan 1
        assert len(result) == 8
        assert result[-1].day == date(2024, 1, 8)
