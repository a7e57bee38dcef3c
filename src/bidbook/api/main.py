"""
FastAPI application entry point.

This module instantiates the FastAPI app, registers API routers, maps
engine errors onto HTTP status codes and defines application startup and
shutdown hooks. When run via ``uvicorn`` the app will be served as an
ASGI application.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.config import get_settings
from ..core.db import dispose_engine, init_db_schema
from ..core.errors import MarketError
from ..core.services.notifications import get_notification_dispatcher
from ..core.utils.logger import configure_logging
from .routers import admin as admin_router
from .routers import invoices as invoices_router
from .routers import listings as listings_router
from .routers import offers as offers_router
from .routers import sweeps as sweeps_router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    """Application lifespan hook.

    On startup this hook configures logging and creates the database
    schema when running against a development or test database. In
    production you should rely on Alembic migrations instead. On shutdown
    the notification client and the engine are closed.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.env in {"dev", "test"}:
        logger.info("Initialising database schema…")
        await init_db_schema()
    yield
    await get_notification_dispatcher().aclose()
    await dispose_engine()


async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app() -> FastAPI:
    """Factory for the FastAPI app."""
    app = FastAPI(title="Bidbook Settlement API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production restrict to specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketError, market_error_handler)
    # Register routers
    app.include_router(listings_router.router)
    app.include_router(offers_router.router)
    app.include_router(invoices_router.router)
    app.include_router(sweeps_router.router)
    app.include_router(admin_router.router)
    return app


app = create_app()
