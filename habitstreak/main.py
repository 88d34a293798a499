import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from habitstreak/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from habitstreak.core.config import settings, validate_config
from habitstreak.core.logging import configure_logging
from habitstreak.core.middleware.request_id import RequestIdMiddleware
from habitstreak.core.middleware.metrics import MetricsMiddleware
from habitstreak.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from habitstreak.api import health, metrics, streaks
from habitstreak.features.streaks.factory import build_engine
from habitstreak.features.streaks.service import StreakEngine

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


def create_app(engine: Optional[StreakEngine] = None) -> FastAPI:
    """Build the API. Pass an engine to skip building one from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("habitstreak")
        owns_engine = getattr(app.state, "engine", None) is None
        if owns_engine:
            app.state.engine = build_engine(settings)
        logger.info(f"Starting habit streak service (store={type(app.state.engine.store).__name__})")
        try:
            yield
        finally:
            logger.info("Stopping habit streak service...")
            if owns_engine:
                app.state.engine.store.close()
                app.state.engine = None

    app = FastAPI(title="Habit Streaks", lifespan=lifespan)
    app.state.engine = engine

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(streaks.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
