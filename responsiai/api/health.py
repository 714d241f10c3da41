"""
Health endpoints.

Lightweight liveness and readiness checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from responsiai.api.deps import get_container
from responsiai.core.container import Container
from responsiai.core.database import metadata

logger = logging.getLogger("responsiai.health")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = tuple(t.name for t in metadata.sorted_tables)


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(container: Container = Depends(get_container)):
    """Readiness check: webhook workers running, DB connectivity + required tables."""
    if not container.workers.running:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "webhook workers not running"})

    if container.engine is None:
        return {"status": "ok", "store": "memory", "queue_depth": container.workers.qsize()}

    try:
        with container.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(container.engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok", "store": "sql", "queue_depth": container.workers.qsize()}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
