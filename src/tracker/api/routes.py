"""JSON endpoints for fiat and synthesized crypto rates.

Every response is an envelope: {"success": true, "data": ...} on success,
{"success": false, "error": "..."} on failure (see tracker.api.app).
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tracker.exceptions import InvalidRequest
from tracker.models import CryptoCandle, FiatRate, FiatRateTable
from tracker.service import RateService

router = APIRouter()

DEFAULT_HISTORY_DAYS = 30


def _ok(data: Any) -> JSONResponse:
    return JSONResponse(content={"success": True, "data": data})


def _service(request: Request) -> RateService:
    return request.app.state.service


def _decimal_to_str(value: Decimal) -> str:
    return str(value)


def _fiat_to_dict(rate: FiatRate) -> dict:
    return {
        "date": rate.date.isoformat(),
        "code": rate.code,
        "name": rate.name,
        "nominal": rate.nominal,
        "value": _decimal_to_str(rate.value),
        "previous": _decimal_to_str(rate.previous),
    }


def _table_to_dict(table: FiatRateTable) -> dict:
    return {
        "date": table.date.isoformat(),
        "rates": [_fiat_to_dict(rate) for _, rate in sorted(table.rates.items())],
    }


def _candle_to_dict(candle: CryptoCandle) -> dict:
    return {
        "symbol": candle.symbol,
        "timestamp": candle.timestamp.isoformat(),
        "open": _decimal_to_str(candle.open),
        "high": _decimal_to_str(candle.high),
        "low": _decimal_to_str(candle.low),
        "close": _decimal_to_str(candle.close),
        "volume": _decimal_to_str(candle.volume),
    }


# ──────────────────────────────────────────────
# Query parameter parsing
# ──────────────────────────────────────────────


def _parse_date(value: str | None, name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidRequest(f"{name} must be a date in YYYY-MM-DD format") from None


def _require_date(value: str | None, name: str) -> date:
    parsed = _parse_date(value, name)
    if parsed is None:
        raise InvalidRequest(f"{name} parameter is required")
    return parsed


def _parse_days(value: str | None) -> int:
    if not value:
        return DEFAULT_HISTORY_DAYS
    try:
        days = int(value)
    except ValueError:
        raise InvalidRequest("days must be an integer") from None
    if days <= 0:
        raise InvalidRequest("days must be positive")
    return days


def _parse_timestamp(value: str | None) -> datetime:
    """Accept ISO 8601 or Unix seconds; naive values are UTC."""
    if not value:
        return datetime.now(timezone.utc)
    try:
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise InvalidRequest("timestamp must be ISO 8601 or Unix seconds") from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# ──────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────


@router.get("/ping")
async def ping() -> JSONResponse:
    return _ok("pong")


@router.get("/info")
async def info(request: Request) -> JSONResponse:
    """Cache coverage summary."""
    return _ok(await _service(request).data_status())


# ──────────────────────────────────────────────
# Fiat rates
# ──────────────────────────────────────────────


@router.get("/rates/cbr")
async def fiat_day(request: Request, date: str | None = None) -> JSONResponse:
    table = await _service(request).fiat_day(_parse_date(date, "date"))
    return _ok(_table_to_dict(table))


@router.get("/rates/cbr/currency")
async def fiat_currency(
    request: Request, code: str | None = None, date: str | None = None
) -> JSONResponse:
    if not code:
        raise InvalidRequest("code parameter is required")
    rate = await _service(request).fiat_currency(code, _parse_date(date, "date"))
    return _ok(_fiat_to_dict(rate))


@router.get("/rates/cbr/history")
async def fiat_history(
    request: Request, code: str | None = None, days: str | None = None
) -> JSONResponse:
    if not code:
        raise InvalidRequest("code parameter is required")
    rates = await _service(request).fiat_history(code, _parse_days(days))
    return _ok([_fiat_to_dict(rate) for rate in rates])


@router.get("/rates/cbr/history/range")
async def fiat_history_range(
    request: Request,
    code: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> JSONResponse:
    if not code:
        raise InvalidRequest("code parameter is required")
    rates = await _service(request).fiat_history_range(
        code,
        _require_date(start_date, "start_date"),
        _require_date(end_date, "end_date"),
    )
    return _ok([_fiat_to_dict(rate) for rate in rates])


@router.get("/rates/cbr/dates")
async def fiat_dates(request: Request) -> JSONResponse:
    dates = await _service(request).available_dates()
    return _ok([day.isoformat() for day in dates])


# ──────────────────────────────────────────────
# Crypto rates
# ──────────────────────────────────────────────


@router.get("/rates/crypto/symbols")
async def crypto_symbols(request: Request) -> JSONResponse:
    return _ok(await _service(request).crypto_symbols())


@router.get("/rates/crypto/rate")
async def crypto_rate(
    request: Request, symbol: str | None = None, timestamp: str | None = None
) -> JSONResponse:
    """Synthesized rate nearest to ``timestamp`` (now when omitted)."""
    if not symbol:
        raise InvalidRequest("symbol parameter is required")
    candle = await _service(request).crypto_rate_at(symbol, _parse_timestamp(timestamp))
    return _ok(_candle_to_dict(candle))


@router.get("/rates/crypto/history")
async def crypto_history(
    request: Request, symbol: str | None = None, days: str | None = None
) -> JSONResponse:
    if not symbol:
        raise InvalidRequest("symbol parameter is required")
    candles = await _service(request).crypto_history(symbol, _parse_days(days))
    return _ok([_candle_to_dict(candle) for candle in candles])


@router.get("/rates/crypto/history/range")
async def crypto_history_range(
    request: Request,
    symbol: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> JSONResponse:
    """Synthesized history over whole days, end_date included."""
    if not symbol:
        raise InvalidRequest("symbol parameter is required")
    candles = await _service(request).crypto_history_range(
        symbol,
        _require_date(start_date, "start_date"),
        _require_date(end_date, "end_date"),
    )
    return _ok([_candle_to_dict(candle) for candle in candles])
