"""Shared data models for fiat rates, crypto candles and synthesized rates.

All prices and rates use Decimal. Never use float for monetary values.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum


class KlineInterval(str, Enum):
    """Candle intervals accepted by the crypto feed."""

    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    THIRTY_MINUTES = "30m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    ONE_DAY = "1d"
    ONE_WEEK = "1w"
    ONE_MONTH = "1M"

    @property
    def duration(self) -> timedelta:
        """Nominal candle length. A month counts as 31 days."""
        return _INTERVAL_DURATIONS[self]


_INTERVAL_DURATIONS = {
    KlineInterval.ONE_MINUTE: timedelta(minutes=1),
    KlineInterval.FIVE_MINUTES: timedelta(minutes=5),
    KlineInterval.FIFTEEN_MINUTES: timedelta(minutes=15),
    KlineInterval.THIRTY_MINUTES: timedelta(minutes=30),
    KlineInterval.ONE_HOUR: timedelta(hours=1),
    KlineInterval.FOUR_HOURS: timedelta(hours=4),
    KlineInterval.ONE_DAY: timedelta(days=1),
    KlineInterval.ONE_WEEK: timedelta(weeks=1),
    KlineInterval.ONE_MONTH: timedelta(days=31),
}

# Row key for refresh-job ticker snapshots, kept apart from candle series
TICKER_SNAPSHOT = "ticker"


def select_interval(days: int) -> KlineInterval:
    """Pick a candle interval for a lookback of ``days``.

    Trades data volume against resolution: wider windows get coarser candles
    so a single request stays near one page of results.
    """
    if days <= 1:
        return KlineInterval.ONE_MINUTE
    if days <= 7:
        return KlineInterval.FIFTEEN_MINUTES
    if days <= 30:
        return KlineInterval.ONE_HOUR
    if days <= 90:
        return KlineInterval.FOUR_HOURS
    return KlineInterval.ONE_DAY


def to_ms(moment: datetime) -> int:
    """Convert a datetime to Unix milliseconds, treating naive values as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def ms_to_datetime(timestamp_ms: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


@dataclass
class FiatRate:
    """One currency's rate to the local fiat for a single day.

    ``value`` is quoted per ``nominal`` units (e.g. 100 JPY), so synthesis
    uses ``unit_value``.
    """

    date: date
    code: str
    name: str
    nominal: int
    value: Decimal
    previous: Decimal

    @property
    def unit_value(self) -> Decimal:
        """Rate for a single unit of the currency."""
        if self.nominal in (0, 1):
            return self.value
        return self.value / Decimal(self.nominal)


@dataclass
class FiatRateTable:
    """A full day's fiat table as returned by the fiat feed.

    ``date`` is the day the rows belong to. When the requested archive day
    was unavailable the feed serves the latest table instead; ``substituted``
    is then True and ``date`` differs from ``requested_date``.
    """

    date: date
    rates: dict[str, FiatRate] = field(default_factory=dict)
    requested_date: date | None = None
    substituted: bool = False


@dataclass
class CryptoCandle:
    """A single OHLCV candle.

    Also carries synthesized crypto -> fiat rates, in which case ``symbol``
    is "<CRYPTO>/<FIAT>" (e.g. "BTC/RUB").
    """

    symbol: str
    timestamp_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @property
    def timestamp(self) -> datetime:
        return ms_to_datetime(self.timestamp_ms)

    @property
    def day(self) -> date:
        """UTC calendar day of the candle open time."""
        return self.timestamp.date()


def utc_day(moment: datetime) -> date:
    """Calendar day of ``moment`` in UTC, treating naive values as UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()
