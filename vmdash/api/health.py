"""
Health endpoints.

Lightweight checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from vmdash.core.database import check_connection, get_engine, metadata
from vmdash.core.logging import get_request_id

logger = logging.getLogger("vmdash")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database_unreachable"})

    present = set(inspect(get_engine()).get_table_names())
    missing = sorted(name for name in metadata.tables if name not in present)
    if missing:
        logger.warning("readyz.missing_tables", extra={"missing": missing, "request_id": get_request_id()})
        return JSONResponse(status_code=503, content={"ready": False, "missing_tables": missing})
    return {"ready": True}
