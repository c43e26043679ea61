"""Entry point for the currency rate tracker.

Wires all components together and serves the FastAPI app with uvicorn. The
refresh schedulers share uvicorn's event loop and are started and stopped
by FastAPI's lifespan context manager.

Component wiring order (in _build_components):
1. RatesDatabase + RateStore (rate cache)
2. BinanceRateSource (crypto candles via ccxt)
3. CBRRateSource (daily fiat table)
4. RateSynthesizer (crypto -> fiat triangulation)
5. RateService (cache-through lookups for the API)
6. RefreshScheduler x2 (daily fiat snapshot, periodic crypto refresh)
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import uvicorn
from fastapi import FastAPI

from tracker.api.app import create_app
from tracker.config import AppSettings
from tracker.data.database import RatesDatabase
from tracker.data.store import RateStore
from tracker.logging import get_logger, setup_logging
from tracker.scheduler.jobs import CryptoRefreshJob, FiatSnapshotJob
from tracker.scheduler.refresh import RefreshScheduler
from tracker.service import RateService
from tracker.sources.binance_source import BinanceRateSource
from tracker.sources.cbr_source import CBRRateSource
from tracker.synthesis.synthesizer import RateSynthesizer


def _build_components(settings: AppSettings, database: RatesDatabase) -> dict[str, Any]:
    """Build the dependency graph on top of an (unconnected) database."""
    store = RateStore(database)
    crypto_source = BinanceRateSource(settings.binance)
    fiat_source = CBRRateSource(settings.cbr)
    synthesizer = RateSynthesizer(crypto_source, fiat_source, settings.synthesis)
    service = RateService(store, fiat_source, synthesizer, settings)

    fiat_scheduler = RefreshScheduler(
        "fiat_daily",
        FiatSnapshotJob(fiat_source, store),
        period=timedelta(days=1),
        daily_at=(settings.scheduler.fiat_hour_utc, settings.scheduler.fiat_minute_utc),
    )
    crypto_scheduler = RefreshScheduler(
        "crypto_refresh",
        CryptoRefreshJob(
            synthesizer,
            store,
            settings.scheduler.crypto_symbols,
            settings.synthesis.fiat_code,
        ),
        period=timedelta(minutes=settings.scheduler.crypto_interval_minutes),
    )

    return {
        "database": database,
        "store": store,
        "crypto_source": crypto_source,
        "fiat_source": fiat_source,
        "synthesizer": synthesizer,
        "service": service,
        "fiat_scheduler": fiat_scheduler,
        "crypto_scheduler": crypto_scheduler,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the cache, warm it up and run the schedulers for the app's lifetime.

    On shutdown: stops both schedulers, closes the ccxt client and the
    database connection.
    """
    logger = get_logger("tracker.main")
    settings: AppSettings = app.state.settings
    components = app.state.components

    await components["database"].connect()

    if settings.scheduler.warm_up:
        try:
            await components["fiat_scheduler"].run_immediately()
        except Exception:
            logger.error("warm_up_failed", exc_info=True)

    if settings.scheduler.fiat_enabled:
        await components["fiat_scheduler"].start()
    if settings.scheduler.crypto_enabled:
        await components["crypto_scheduler"].start()

    logger.info("lifespan_started", fiat_code=settings.synthesis.fiat_code)

    yield

    await components["crypto_scheduler"].stop()
    await components["fiat_scheduler"].stop()
    await components["crypto_source"].close()
    await components["database"].close()

    logger.info("currency_tracker_stopped")


async def run() -> None:
    """Run the tracker: API server plus refresh schedulers on one event loop."""
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("tracker.main")

    # 3. Build all components
    database = RatesDatabase(settings.database.path)
    components = _build_components(settings, database)

    app = create_app(components["service"], lifespan=lifespan)
    app.state.settings = settings
    app.state.components = components

    logger.info(
        "starting_currency_tracker",
        host=settings.api.host,
        port=settings.api.port,
        db_path=settings.database.path,
    )

    config = uvicorn.Config(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="warning",  # Suppress uvicorn access logs
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
