import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tilespace.api import billing, health, migration, usage, workspaces
from tilespace.core.config import settings, validate_config
from tilespace.core.database import create_all_tables
from tilespace.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from tilespace.core.logging import configure_logging
from tilespace.core.middleware.identity_cookie import GuestCookieMiddleware
from tilespace.core.middleware.metrics import MetricsMiddleware
from tilespace.core.middleware.ratelimit import RateLimitMiddleware
from tilespace.core.middleware.request_id import RequestIdMiddleware
from tilespace.features.plans.service import seed_plans
from tilespace.features.workspaces.guest_store import GuestWorkspaceCache

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


GUEST_SWEEP_INTERVAL_SECONDS = 300


async def _sweep_guest_cache(cache: GuestWorkspaceCache) -> None:
    while True:
        await asyncio.sleep(GUEST_SWEEP_INTERVAL_SECONDS)
        removed = cache.sweep()
        if removed:
            logging.getLogger("tilespace").info("guest_cache.swept", extra={"removed": removed})


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tilespace")
    logger.info("Starting Tilespace backend...")
    app.state.startup_time = time.time()
    create_all_tables()
    seed_plans()
    sweeper = asyncio.create_task(_sweep_guest_cache(app.state.guest_cache))
    try:
        yield
    finally:
        sweeper.cancel()
        logger.info("Stopping Tilespace backend...")


def create_app() -> FastAPI:
    app = FastAPI(title="Tilespace - Backend", lifespan=lifespan)
    app.state.guest_cache = GuestWorkspaceCache(ttl_seconds=settings.GUEST_CACHE_TTL_SECONDS)

    # Middlewares (last added runs first)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(GuestCookieMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(usage.router)
    app.include_router(workspaces.router)
    app.include_router(migration.router)
    app.include_router(billing.router)
    return app


app = create_app()
