"""Abstract rate source interfaces.

The synthesizer, schedulers and service depend only on these contracts,
keeping Binance- and CBR-specific details in the concrete implementations.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime

from tracker.models import CryptoCandle, FiatRate, FiatRateTable, KlineInterval


class CryptoRateSource(ABC):
    """Time-series OHLCV source for trading pairs."""

    @abstractmethod
    async def fetch_candles(
        self,
        pair_symbol: str,
        interval: KlineInterval,
        start_time: datetime,
        end_time: datetime,
    ) -> list[CryptoCandle]:
        """Fetch candles for a pair over [start_time, end_time].

        Returns candles ascending by timestamp.

        Raises:
            ValueError: If start_time is after end_time.
            SymbolNotFound: If the pair is unknown upstream (no retry).
            SourceUnavailable: If the feed stays unreachable after retries.
        """
        ...

    @abstractmethod
    async def current_price(self, pair_symbol: str) -> CryptoCandle:
        """Return a 24h ticker snapshot as a candle stamped with the current time."""
        ...

    async def close(self) -> None:
        """Release network resources. No-op unless the source holds any."""


class FiatRateSource(ABC):
    """Date-indexed fiat rate table source."""

    @abstractmethod
    async def fetch_day(self, day: date | None = None) -> FiatRateTable:
        """Fetch the full table for ``day``; None means the latest available."""
        ...

    @abstractmethod
    async def fetch_one(self, code: str, day: date | None = None) -> FiatRate:
        """Fetch a single currency's rate for ``day``.

        Raises:
            CurrencyNotFound: If ``code`` is absent from that day's table.
        """
        ...
