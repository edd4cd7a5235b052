from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from payrecon.config import settings
from payrecon.errors import PersistenceError
from payrecon.services.reconciliation import ReconciliationEngine

from .deps import get_engine

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


@router.get("/health/metrics")
async def health_metrics(engine: ReconciliationEngine = Depends(get_engine)) -> dict[str, Any]:
    """Service health with order counts by status."""

    captured_at = datetime.now(timezone.utc)
    store_ok = True
    try:
        status_counts = engine.orders.count_by_status()
    except PersistenceError as exc:
        logger.info("health metrics collection failed", extra={"error": str(exc)})
        status_counts = {}
        store_ok = False

    return {
        "status": "ok" if store_ok else "degraded",
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": int((captured_at - SERVICE_STARTED_AT).total_seconds()),
        "service": {
            "default_provider": settings.default_provider,
            "environment": settings.app_env,
            "payu_environment": settings.payu_environment,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": settings.db_enabled,
            "connected": store_ok and settings.db_enabled,
            "schema": settings.db_schema or None,
        },
        "orders": {
            "status_counts": status_counts,
            "pending": status_counts.get("PENDING", 0),
        },
    }
