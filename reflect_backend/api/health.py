"""
Liveness and readiness checks. Unauthenticated; bodies never carry config.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from reflect_backend.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("reflect")

root_router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    logger.warning("readyz.failed", extra={"detail": detail})
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Ready once the database answers and every app table exists."""
    if not check_connection():
        return _not_ready("database unreachable")

    try:
        inspector = inspect(get_engine())
        missing = sorted(name for name in metadata.tables if not inspector.has_table(name))
    except SQLAlchemyError:
        return _not_ready("schema inspection failed")
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}
