"""Crypto -> fiat rate synthesis by triangulating two legs.

The primary route multiplies the crypto/stablecoin candles by the
stablecoin/fiat candles from the same exchange. When the exchange has no
stablecoin/fiat market (or it errors), the fiat feed's reference currency
rate (USD for a USDT stablecoin) stands in for the second leg.

Tolerances differ by route: the intraday series is matched within one hour
of each crypto candle, the daily fallback within a week of its calendar day.
"""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

from tracker.config import SynthesisSettings
from tracker.exceptions import NoFallbackData, NoMarketData, TrackerError
from tracker.logging import get_logger
from tracker.models import CryptoCandle, KlineInterval, to_ms, utc_day
from tracker.sources.base import CryptoRateSource, FiatRateSource
from tracker.synthesis.align import (
    match_day_scalars,
    match_series,
    multiply_candles,
    nearest_candle,
    scale_candle,
)

logger = get_logger(__name__)

_POINT_WINDOW = timedelta(hours=1)


class RateSynthesizer:
    """Produces crypto -> fiat rates from a crypto source and a fiat source.

    Usage:
        synthesizer = RateSynthesizer(binance, cbr, settings.synthesis)
        rate = await synthesizer.synthesize_at("BTC", "RUB", moment)
        history = await synthesizer.synthesize_range(
            "BTC", "RUB", KlineInterval.ONE_HOUR, start, end
        )
    """

    def __init__(
        self,
        crypto_source: CryptoRateSource,
        fiat_source: FiatRateSource,
        settings: SynthesisSettings,
    ) -> None:
        self._crypto = crypto_source
        self._fiat = fiat_source
        self._settings = settings

    def crypto_pair(self, crypto_symbol: str) -> str:
        return f"{crypto_symbol.upper()}/{self._settings.reference_stable}"

    def fiat_pair(self, fiat_code: str) -> str:
        return f"{self._settings.reference_stable}/{fiat_code.upper()}"

    @staticmethod
    def output_symbol(crypto_symbol: str, fiat_code: str) -> str:
        return f"{crypto_symbol.upper()}/{fiat_code.upper()}"

    # ──────────────────────────────────────────────
    # Single point
    # ──────────────────────────────────────────────

    async def synthesize_at(
        self, crypto_symbol: str, fiat_code: str, timestamp: datetime
    ) -> CryptoCandle:
        """Synthesize the crypto -> fiat candle nearest to ``timestamp``.

        Looks one hour either side of ``timestamp`` on hourly candles. The
        result carries the crypto candle's timestamp and volume.

        Raises:
            NoMarketData: If the crypto leg has no candles in the window.
            NoFallbackData: If the stablecoin leg and the fiat-feed
                fallback are both unavailable.
        """
        symbol = self.output_symbol(crypto_symbol, fiat_code)
        start, end = timestamp - _POINT_WINDOW, timestamp + _POINT_WINDOW
        target_ms = to_ms(timestamp)

        crypto_leg = await self._crypto.fetch_candles(
            self.crypto_pair(crypto_symbol), KlineInterval.ONE_HOUR, start, end
        )
        crypto = nearest_candle(crypto_leg, target_ms)
        if crypto is None:
            raise NoMarketData(
                f"no {self.crypto_pair(crypto_symbol)} rate data available around {timestamp}"
            )

        fiat_leg = await self._fetch_fiat_leg(fiat_code, KlineInterval.ONE_HOUR, start, end)
        fiat = nearest_candle(fiat_leg, target_ms)
        if fiat is not None:
            return multiply_candles(crypto, fiat, symbol)

        day = utc_day(timestamp)
        try:
            reference = await self._fiat.fetch_one(self._settings.reference_currency, day)
        except TrackerError as e:
            raise NoFallbackData(
                f"no {self.fiat_pair(fiat_code)} candles and no "
                f"{self._settings.reference_currency} fiat rate for {day}: {e}"
            ) from e

        if reference.date != day:
            logger.warning(
                "fallback_rate_from_other_day",
                requested_date=day.isoformat(),
                served_date=reference.date.isoformat(),
            )
        logger.info(
            "synthesized_with_fiat_fallback",
            symbol=symbol,
            date=day.isoformat(),
            scalar=str(reference.unit_value),
        )
        return scale_candle(crypto, reference.unit_value, symbol)

    async def synthesize_current(self, crypto_symbol: str, fiat_code: str) -> CryptoCandle:
        """Synthesize a current rate from the 24h ticker and the latest fiat table.

        The stablecoin is taken at par with the fiat feed's reference
        currency, so only the latest reference rate is needed.
        """
        symbol = self.output_symbol(crypto_symbol, fiat_code)
        ticker = await self._crypto.current_price(self.crypto_pair(crypto_symbol))
        reference = await self._fiat.fetch_one(self._settings.reference_currency)

        scalar = reference.unit_value
        if scalar == 0:
            raise NoFallbackData(
                f"{self._settings.reference_currency} rate from fiat feed is zero"
            )

        result = scale_candle(ticker, scalar, symbol)
        logger.debug(
            "synthesized_current_rate",
            symbol=symbol,
            close=str(result.close),
            crypto_close=str(ticker.close),
            scalar=str(scalar),
        )
        return result

    # ──────────────────────────────────────────────
    # Range
    # ──────────────────────────────────────────────

    async def synthesize_range(
        self,
        crypto_symbol: str,
        fiat_code: str,
        interval: KlineInterval,
        start_time: datetime,
        end_time: datetime,
    ) -> list[CryptoCandle]:
        """Synthesize a crypto -> fiat series over [start_time, end_time].

        Candles that cannot be matched within tolerance are omitted, so the
        result may be shorter than the crypto leg. That is still a success.

        Raises:
            NoMarketData: If the crypto leg is empty.
            NoFallbackData: If the stablecoin leg is unavailable and no
                fiat-feed day in the range could be fetched.
        """
        symbol = self.output_symbol(crypto_symbol, fiat_code)
        logger.info(
            "synthesizing_range",
            symbol=symbol,
            interval=KlineInterval(interval).value,
            start=start_time.isoformat(),
            end=end_time.isoformat(),
        )

        crypto_leg = await self._crypto.fetch_candles(
            self.crypto_pair(crypto_symbol), interval, start_time, end_time
        )
        if not crypto_leg:
            raise NoMarketData(f"no {self.crypto_pair(crypto_symbol)} rate data available")

        fiat_leg = await self._fetch_fiat_leg(fiat_code, interval, start_time, end_time)

        if fiat_leg:
            result, stats = match_series(
                crypto_leg,
                fiat_leg,
                symbol,
                tolerance_ms=self._settings.series_tolerance_seconds * 1000,
            )
            route = "series"
        else:
            scalars = await self._fetch_day_scalars(
                utc_day(start_time), utc_day(end_time)
            )
            if not scalars:
                raise NoFallbackData(
                    f"failed to get {self._settings.reference_currency} rates from the "
                    f"fiat feed and {self.fiat_pair(fiat_code)} rates from the exchange"
                )
            result, stats = match_day_scalars(
                crypto_leg,
                scalars,
                symbol,
                max_days=self._settings.fallback_max_days,
            )
            route = "day_scalar"

        if stats["skipped"]:
            logger.info("synthesis_partial", symbol=symbol, route=route, **stats)
        logger.info(
            "synthesized_range",
            symbol=symbol,
            route=route,
            count=len(result),
            exact=stats["exact"],
            closest=stats["closest"],
        )
        return result

    # ──────────────────────────────────────────────
    # Leg helpers
    # ──────────────────────────────────────────────

    async def _fetch_fiat_leg(
        self,
        fiat_code: str,
        interval: KlineInterval,
        start_time: datetime,
        end_time: datetime,
    ) -> list[CryptoCandle]:
        """Fetch the stablecoin -> fiat candles, treating any failure as empty."""
        pair = self.fiat_pair(fiat_code)
        try:
            candles = await self._crypto.fetch_candles(pair, interval, start_time, end_time)
        except TrackerError as e:
            logger.warning("fiat_leg_unavailable", pair=pair, error=str(e))
            return []
        if not candles:
            logger.warning("fiat_leg_empty", pair=pair)
        return candles

    async def _fetch_day_scalars(self, first_day: date, last_day: date) -> dict[date, Decimal]:
        """Fetch the reference currency rate for every day in [first_day, last_day].

        Runs at most ``fallback_concurrency`` requests at once. Days that fail,
        or whose table was substituted with another day's, are left out.
        """
        code = self._settings.reference_currency
        semaphore = asyncio.Semaphore(max(1, self._settings.fallback_concurrency))
        days = [
            first_day + timedelta(days=offset)
            for offset in range((last_day - first_day).days + 1)
        ]

        async def fetch(day: date) -> tuple[date, Decimal | None]:
            async with semaphore:
                try:
                    rate = await self._fiat.fetch_one(code, day)
                except TrackerError as e:
                    logger.debug("fallback_day_failed", date=day.isoformat(), error=str(e))
                    return day, None
            if rate.date != day:
                logger.debug(
                    "fallback_day_substituted",
                    date=day.isoformat(),
                    served_date=rate.date.isoformat(),
                )
                return day, None
            return day, rate.unit_value

        results = await asyncio.gather(*(fetch(day) for day in days))
        scalars = {day: value for day, value in results if value is not None}
        logger.info(
            "fallback_day_scalars",
            code=code,
            requested_days=len(days),
            available_days=len(scalars),
        )
        return scalars
