from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import ParleyException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.rate_limit import setup_rate_limiting
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    # Shared gateway connection pool
    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


parley_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = parley_app

__all__ = ["app", "parley_app", "lifespan"]


@parley_app.exception_handler(ParleyException)
async def parley_exception_handler(request: Request, exc: ParleyException) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@parley_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return handle_exception(request, exc)


@parley_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors get a sanitized envelope with a correlatable error id."""
    return handle_exception(request, exc)


setup_rate_limiting(parley_app)

parley_app.add_middleware(SecurityHeadersMiddleware)
parley_app.add_middleware(RequestIDMiddleware)

register_lifecycle_routes(parley_app, app_name=settings.APP_NAME, version=settings.VERSION)
register_api_routers(parley_app)
