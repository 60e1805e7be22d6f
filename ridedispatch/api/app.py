"""
FastAPI application factory.

* Registers routes for riders, drivers, offers, orders, notifications and
  admin.
* Builds the services (SQL record store + Redis change feed) in the
  lifespan unless a ready ``Services`` is injected (tests, embedding).
* Maps the dispatch error taxonomy to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridedispatch.api.middleware import limiter
from ridedispatch.api.routes import admin, drivers, notifications, offers, orders, rides
from ridedispatch.config import settings
from ridedispatch.domain.exceptions import (
    DispatchError,
    DriverMismatch,
    InvalidTransition,
    NotFound,
    OfferAlreadyResolved,
    StoreError,
)
from ridedispatch.infrastructure.change_feed import RedisChangeFeed
from ridedispatch.infrastructure.database import create_engine, create_session_factory
from ridedispatch.infrastructure.redis_client import create_redis
from ridedispatch.infrastructure.sql_store import SqlRecordStore
from ridedispatch.services.container import Services, build_services

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[DispatchError], int]] = [
    (NotFound, 404),
    (DriverMismatch, 403),
    (InvalidTransition, 409),
    (OfferAlreadyResolved, 409),
    (StoreError, 503),
]


def status_for(exc: DispatchError) -> int:
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 400


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire SQL + Redis backed services on startup; release them on shutdown."""
    if app.state.services is not None:
        yield
        return

    engine = create_engine(settings.database_url)
    redis = create_redis(settings.redis_url)
    feed = RedisChangeFeed(redis, settings.change_feed_prefix)
    store = SqlRecordStore(create_session_factory(engine), feed)
    app.state.services = build_services(store, settings)
    logger.info("Dispatch services ready")
    try:
        yield
    finally:
        app.state.services = None
        await redis.aclose()
        await engine.dispose()


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch & Lifecycle API",
        description=(
            "Broadcasts ride requests to nearby drivers, arbitrates "
            "concurrent acceptances, and drives each ride from assignment "
            "to completion with transparent per-tier pricing."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    for module in (rides, drivers, offers, orders, notifications, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app
