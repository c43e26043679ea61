"""Upstream rate sources -- Binance candles via ccxt and the CBR daily table."""

from tracker.sources.base import CryptoRateSource, FiatRateSource
from tracker.sources.binance_source import BinanceRateSource
from tracker.sources.cbr_source import CBRRateSource

__all__ = ["BinanceRateSource", "CBRRateSource", "CryptoRateSource", "FiatRateSource"]
