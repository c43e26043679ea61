"""Shared test fixtures for the currency rate tracker."""

import pytest

from tracker.config import (
    ApiSettings,
    AppSettings,
    BinanceSettings,
    CBRSettings,
    SchedulerSettings,
    SynthesisSettings,
)


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (no retry delays, short symbol list)."""
    return AppSettings(
        log_level="DEBUG",
        binance=BinanceSettings(
            page_limit=3,
            max_retries=3,
            retry_base_delay=0.0,
        ),
        cbr=CBRSettings(
            base_url="https://cbr.test",
            max_retries=2,
            retry_base_delay=0.0,
        ),
        synthesis=SynthesisSettings(),
        scheduler=SchedulerSettings(crypto_symbols=["BTC", "ETH"]),
        api=ApiSettings(),
    )
