"""Configuration system using pydantic-settings with environment variable loading.

Settings are built once at process start (see tracker.main) and passed to
each component explicitly. Nothing reads configuration from module globals.
"""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BinanceSettings(BaseSettings):
    """Binance connection settings (public market data endpoints only)."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    timeout_ms: int = 30_000
    page_limit: int = 1000  # Binance kline cap per request
    max_retries: int = 3
    retry_base_delay: float = 1.0


class CBRSettings(BaseSettings):
    """Central Bank of Russia daily rate feed settings."""

    model_config = SettingsConfigDict(env_prefix="CBR_")

    base_url: str = "https://www.cbr-xml-daily.ru"
    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


class SynthesisSettings(BaseSettings):
    """Triangulation parameters for crypto -> fiat rate synthesis."""

    model_config = SettingsConfigDict(env_prefix="SYNTH_")

    reference_stable: str = "USDT"
    reference_currency: str = "USD"  # fiat-feed stand-in for the stablecoin
    fiat_code: str = "RUB"
    series_tolerance_seconds: int = 3600
    fallback_max_days: int = 7
    fallback_concurrency: int = 8


class SchedulerSettings(BaseSettings):
    """Unattended refresh schedule configuration."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    fiat_enabled: bool = True
    fiat_hour_utc: int = 23
    fiat_minute_utc: int = 59
    crypto_enabled: bool = True
    crypto_interval_minutes: int = 15
    crypto_symbols: list[str] = [
        "BTC",
        "ETH",
        "BNB",
        "SOL",
        "XRP",
        "ADA",
        "DOGE",
        "DOT",
        "LTC",
    ]
    warm_up: bool = True  # run the fiat snapshot once on startup


class DatabaseSettings(BaseSettings):
    """Rate cache storage location."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = "data/rates.db"


class ApiSettings(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    max_lookback_days: int = 365


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production
    binance: BinanceSettings = BinanceSettings()
    cbr: CBRSettings = CBRSettings()
    synthesis: SynthesisSettings = SynthesisSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    database: DatabaseSettings = DatabaseSettings()
    api: ApiSettings = ApiSettings()
