"""FastAPI application factory with the error envelope handlers."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tracker.api import routes
from tracker.exceptions import InvalidRequest, NotFoundError, TrackerError
from tracker.logging import get_logger
from tracker.service import RateService

logger = get_logger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if isinstance(exc, InvalidRequest):
        return _error(400, str(exc))
    if isinstance(exc, NotFoundError):
        return _error(404, str(exc))
    logger.error(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return _error(500, "internal server error")


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error(400, "invalid request parameters")


def create_app(service: RateService | None = None, lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: RateService used by the route handlers. May be None when the
                 lifespan wires it onto app.state at startup.
        lifespan: Optional async context manager for startup/shutdown.
    """
    app = FastAPI(title="Currency Rate Tracker", lifespan=lifespan)
    app.state.service = service

    app.add_exception_handler(TrackerError, _tracker_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]

    app.include_router(routes.router)
    return app
