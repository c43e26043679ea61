"""Job bodies run by the refresh schedulers."""

from tracker.data.store import RateStore
from tracker.exceptions import TrackerError
from tracker.logging import get_logger
from tracker.models import TICKER_SNAPSHOT, CryptoCandle
from tracker.sources.base import FiatRateSource
from tracker.synthesis.synthesizer import RateSynthesizer

logger = get_logger(__name__)


class FiatSnapshotJob:
    """Fetch the latest fiat table and upsert it under the table's own date."""

    def __init__(self, fiat_source: FiatRateSource, store: RateStore) -> None:
        self._fiat = fiat_source
        self._store = store

    async def __call__(self) -> int:
        table = await self._fiat.fetch_day(None)
        written = await self._store.upsert_fiat_rates(list(table.rates.values()))
        logger.info(
            "fiat_snapshot_saved",
            date=table.date.isoformat(),
            currencies=written,
        )
        return written


class CryptoRefreshJob:
    """Synthesize the current rate for each symbol and upsert the batch.

    Snapshots are stored under the ticker key, apart from the candle series
    that history requests read.

    A symbol that fails is logged and skipped. The job raises only when
    every symbol failed, so the scheduler records one failed run.
    """

    def __init__(
        self,
        synthesizer: RateSynthesizer,
        store: RateStore,
        symbols: list[str],
        fiat_code: str,
    ) -> None:
        self._synthesizer = synthesizer
        self._store = store
        self._symbols = list(symbols)
        self._fiat_code = fiat_code

    async def __call__(self) -> int:
        rates: list[CryptoCandle] = []
        failed: list[str] = []

        for symbol in self._symbols:
            try:
                rate = await self._synthesizer.synthesize_current(symbol, self._fiat_code)
            except TrackerError as e:
                logger.warning("crypto_refresh_symbol_failed", symbol=symbol, error=str(e))
                failed.append(symbol)
                continue
            rates.append(rate)

        if self._symbols and not rates:
            raise TrackerError(
                f"crypto refresh failed for all {len(self._symbols)} symbols"
            )

        written = await self._store.upsert_crypto_rates(rates, TICKER_SNAPSHOT)
        logger.info(
            "crypto_rates_refreshed",
            saved=written,
            failed=len(failed),
            failed_symbols=failed,
        )
        return written
