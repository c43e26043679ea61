"""Central Bank of Russia daily rate source.

Reads the cbr-xml-daily.ru JSON mirror: the latest table lives at
``/daily_json.js`` and archived days at ``/archive/YYYY/MM/DD/daily_json.js``.
Uses urllib.request (stdlib) on a worker thread, since the feed is a single
JSON GET per day and needs no client session.

Archive days that do not exist (weekends, holidays, days not yet
published) return 404. In that case the latest table is served instead and
flagged as substituted so callers can tell it belongs to a different day.
"""

import asyncio
import json
import urllib.error
import urllib.request
from datetime import date, datetime
from decimal import Decimal

from tracker.config import CBRSettings
from tracker.exceptions import CurrencyNotFound, SourceUnavailable
from tracker.logging import get_logger
from tracker.models import FiatRate, FiatRateTable
from tracker.sources.base import FiatRateSource
from tracker.sources.retry import call_with_retry

logger = get_logger(__name__)


class CBRRateSource(FiatRateSource):
    """Fetches single-day fiat tables from the CBR JSON feed."""

    def __init__(self, settings: CBRSettings) -> None:
        self._settings = settings
        self._base_url = settings.base_url.strip('"').rstrip("/")

    async def fetch_day(self, day: date | None = None) -> FiatRateTable:
        """Fetch the table for ``day`` (None = latest).

        Falls back to the latest table when the archive day is missing.
        """
        payload = await self._get_json(self._url(day))

        if payload is None:
            if day is None:
                raise SourceUnavailable("Latest CBR table returned 404")
            payload = await self._get_json(self._url(None))
            if payload is None:
                raise SourceUnavailable("Latest CBR table returned 404")
            table = self._parse_table(payload, table_date=None)
            table.requested_date = day
            table.substituted = True
            logger.warning(
                "fiat_rate_date_substituted",
                requested_date=day.isoformat(),
                served_date=table.date.isoformat(),
            )
            return table

        table = self._parse_table(payload, table_date=day)
        table.requested_date = day
        return table

    async def fetch_one(self, code: str, day: date | None = None) -> FiatRate:
        """Fetch one currency's rate for ``day`` (None = latest)."""
        if not code:
            raise ValueError("currency code cannot be empty")

        table = await self.fetch_day(day)
        rate = table.rates.get(code.upper())
        if rate is None:
            raise CurrencyNotFound(f"currency with code {code} not found")
        return rate

    def _url(self, day: date | None) -> str:
        if day is None:
            return f"{self._base_url}/daily_json.js"
        return f"{self._base_url}/archive/{day:%Y/%m/%d}/daily_json.js"

    async def _get_json(self, url: str) -> dict | None:
        """GET a JSON document with retry. Returns None on HTTP 404."""
        return await call_with_retry(
            asyncio.to_thread,
            self._get_json_blocking,
            url,
            operation=f"cbr GET {url}",
            retry_on=(urllib.error.URLError, TimeoutError),
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_base_delay,
        )

    def _get_json_blocking(self, url: str) -> dict | None:
        headers = {"Accept": "application/json", "User-Agent": "CurrencyTracker/1.0"}
        req = urllib.request.Request(url, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self._settings.timeout_seconds) as resp:
                return json.loads(resp.read(), parse_float=Decimal)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            if e.code >= 500:
                raise  # URLError subclass, retried
            raise SourceUnavailable(
                f"failed to fetch CBR rates, status code: {e.code}"
            ) from e
        except json.JSONDecodeError as e:
            raise SourceUnavailable(f"failed to decode CBR response: {e}") from e

    @staticmethod
    def _parse_table(payload: dict, table_date: date | None) -> FiatRateTable:
        """Build a FiatRateTable from the feed's JSON.

        ``table_date`` overrides the document's own Date field; archive hits
        are keyed by the day that was asked for.
        """
        if table_date is None:
            raw_date = payload.get("Date")
            if not raw_date:
                raise SourceUnavailable("CBR response has no Date field")
            table_date = datetime.fromisoformat(raw_date).date()

        rates: dict[str, FiatRate] = {}
        for code, valute in payload.get("Valute", {}).items():
            char_code = valute.get("CharCode", code)
            rates[char_code] = FiatRate(
                date=table_date,
                code=char_code,
                name=valute.get("Name", ""),
                nominal=int(valute.get("Nominal", 1)),
                value=Decimal(str(valute.get("Value", 0))),
                previous=Decimal(str(valute.get("Previous", 0))),
            )
        return FiatRateTable(date=table_date, rates=rates)
