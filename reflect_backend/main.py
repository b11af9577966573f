"""
ASGI entrypoint: `uvicorn reflect_backend.main:app`.
"""
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# .env must be loaded before settings are read; pytest runs stay hermetic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))

from reflect_backend.api import billing, entitlement, health, journals  # noqa: E402
from reflect_backend.core.config import settings, validate_config  # noqa: E402
from reflect_backend.core.database import check_connection  # noqa: E402
from reflect_backend.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from reflect_backend.core.logging import configure_logging  # noqa: E402
from reflect_backend.core.middleware.request_id import RequestIdMiddleware  # noqa: E402

logger = logging.getLogger("reflect")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app.startup", extra={"env": settings.ENV, "billing_enabled": bool(settings.STRIPE_SECRET_KEY)})
    if not check_connection():
        logger.warning("app.startup.database_unreachable")
    yield
    logger.info("app.shutdown")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config()

    application = FastAPI(title="Reflect Backend", lifespan=lifespan)

    application.add_middleware(RequestIdMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    application.add_exception_handler(AppError, app_error_handler)
    application.add_exception_handler(StarletteHTTPException, http_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (entitlement.router, journals.router, billing.router, health.root_router):
        application.include_router(router)
    return application


app = create_app()
