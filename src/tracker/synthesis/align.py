"""Timestamp alignment and leg multiplication for rate triangulation.

Pure functions with no I/O, so the matching rules can be tested directly.
Ties in nearest-neighbour searches go to the first candidate seen, which is
the earliest for ascending input.
"""

from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal

from tracker.models import CryptoCandle


def nearest_candle(candles: Iterable[CryptoCandle], timestamp_ms: int) -> CryptoCandle | None:
    """Return the candle closest to ``timestamp_ms`` by absolute difference."""
    best: CryptoCandle | None = None
    best_diff = 0
    for candle in candles:
        diff = abs(candle.timestamp_ms - timestamp_ms)
        if best is None or diff < best_diff:
            best = candle
            best_diff = diff
    return best


def multiply_candles(crypto: CryptoCandle, fiat: CryptoCandle, symbol: str) -> CryptoCandle:
    """Multiply two legs elementwise. Volume stays the crypto leg's."""
    return CryptoCandle(
        symbol=symbol,
        timestamp_ms=crypto.timestamp_ms,
        open=crypto.open * fiat.open,
        high=crypto.high * fiat.high,
        low=crypto.low * fiat.low,
        close=crypto.close * fiat.close,
        volume=crypto.volume,
    )


def scale_candle(crypto: CryptoCandle, scalar: Decimal, symbol: str) -> CryptoCandle:
    """Multiply a crypto candle's prices by a single fiat scalar."""
    return CryptoCandle(
        symbol=symbol,
        timestamp_ms=crypto.timestamp_ms,
        open=crypto.open * scalar,
        high=crypto.high * scalar,
        low=crypto.low * scalar,
        close=crypto.close * scalar,
        volume=crypto.volume,
    )


def match_series(
    crypto_leg: Sequence[CryptoCandle],
    fiat_leg: Sequence[CryptoCandle],
    symbol: str,
    tolerance_ms: int,
) -> tuple[list[CryptoCandle], dict[str, int]]:
    """Triangulate two candle series.

    Each crypto candle is paired with the fiat candle at the same timestamp,
    or failing that the nearest one within ``tolerance_ms``. Crypto candles
    with no fiat candle inside the tolerance are dropped. Output keeps the
    crypto leg's order.

    Returns:
        (synthesized candles, counts of exact / closest / skipped matches)
    """
    by_timestamp: dict[int, CryptoCandle] = {}
    for candle in fiat_leg:
        by_timestamp.setdefault(candle.timestamp_ms, candle)

    result: list[CryptoCandle] = []
    stats = {"exact": 0, "closest": 0, "skipped": 0}

    for crypto in crypto_leg:
        fiat = by_timestamp.get(crypto.timestamp_ms)
        if fiat is not None:
            stats["exact"] += 1
        else:
            fiat = nearest_candle(fiat_leg, crypto.timestamp_ms)
            if fiat is None or abs(fiat.timestamp_ms - crypto.timestamp_ms) > tolerance_ms:
                stats["skipped"] += 1
                continue
            stats["closest"] += 1
        result.append(multiply_candles(crypto, fiat, symbol))

    return result, stats


def closest_day(scalars: dict[date, Decimal], day: date, max_days: int) -> date | None:
    """Return the key of ``scalars`` nearest to ``day`` within ``max_days``.

    Ties go to the earlier day.
    """
    best: tuple[int, date] | None = None
    for candidate in scalars:
        key = (abs((candidate - day).days), candidate)
        if best is None or key < best:
            best = key
    if best is None or best[0] > max_days:
        return None
    return best[1]


def match_day_scalars(
    crypto_leg: Sequence[CryptoCandle],
    scalars: dict[date, Decimal],
    symbol: str,
    max_days: int,
) -> tuple[list[CryptoCandle], dict[str, int]]:
    """Scale each crypto candle by the fiat scalar for its calendar day.

    Days missing from ``scalars`` borrow the closest available day if it is
    at most ``max_days`` away; otherwise the candle is dropped.
    """
    result: list[CryptoCandle] = []
    stats = {"exact": 0, "closest": 0, "skipped": 0}

    for crypto in crypto_leg:
        day = crypto.day
        scalar = scalars.get(day)
        if scalar is not None:
            stats["exact"] += 1
        else:
            nearest = closest_day(scalars, day, max_days)
            if nearest is None:
                stats["skipped"] += 1
                continue
            scalar = scalars[nearest]
            stats["closest"] += 1
        result.append(scale_candle(crypto, scalar, symbol))

    return result, stats
