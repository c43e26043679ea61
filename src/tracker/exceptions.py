"""Custom exceptions for the currency tracker.

Sources, the synthesizer, the store and the HTTP layer all raise from this
hierarchy so the API can map failures to status codes in one place.
"""


class TrackerError(Exception):
    """Base exception for all tracker errors."""


class InvalidRequest(TrackerError):
    """Raised when caller-supplied parameters are missing or malformed."""


class NotFoundError(TrackerError):
    """Base for lookups that found nothing upstream or in the store."""


class SymbolNotFound(NotFoundError):
    """Raised when the crypto feed does not know a trading pair."""


class CurrencyNotFound(NotFoundError):
    """Raised when a currency code is absent from a day's fiat table."""


class NoMarketData(NotFoundError):
    """Raised when the crypto leg returned no candles for the window."""


class SourceUnavailable(TrackerError):
    """Raised when an upstream source is unreachable after retries.

    The last underlying error is available as ``__cause__``.
    """


class NoFallbackData(TrackerError):
    """Raised when both the primary fiat leg and its fallback are empty."""


class StoreError(TrackerError):
    """Raised when a cache write fails during a request-driven synthesis."""
