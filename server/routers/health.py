"""
Health check endpoints for production deployment.

Provides:
- /health - Basic liveness check (is the app running?)
- /ready - Readiness check (can the app handle requests?)
- /metrics - Application metrics for monitoring
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Response

from constants import SNAPSHOT_STORAGE_KEY
from stores.snapshot_store import SnapshotStore, SnapshotStoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Service references (set during app initialization)
_snapshot_store: Optional[SnapshotStore] = None
_session_count: Optional[Callable[[], int]] = None


def set_health_dependencies(
    snapshot_store: Optional[SnapshotStore] = None,
    session_count: Optional[Callable[[], int]] = None,
):
    """Set dependencies for health checks."""
    global _snapshot_store, _session_count
    _snapshot_store = snapshot_store
    _session_count = session_count


@router.get("/health")
async def health_check():
    """
    Basic liveness check - is the app running?

    This endpoint should always return 200 if the process is alive.
    """
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - can the app handle requests?

    Checks that the snapshot store answers. Returns 503 when it does not.
    """
    checks = {}
    overall_healthy = True

    if _snapshot_store is not None:
        try:
            await _snapshot_store.get(SNAPSHOT_STORAGE_KEY)
            checks["snapshot_store"] = {
                "status": "ok",
                "backend": type(_snapshot_store).__name__,
            }
        except SnapshotStoreError as e:
            logger.warning(f"Snapshot store health check failed: {e}")
            checks["snapshot_store"] = {"status": "error", "message": str(e)}
            overall_healthy = False
    else:
        checks["snapshot_store"] = {"status": "not_configured"}

    status_code = 200 if overall_healthy else 503
    return Response(
        content=json.dumps({
            "status": "ok" if overall_healthy else "degraded",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }),
        status_code=status_code,
        media_type="application/json",
    )


@router.get("/metrics")
async def metrics():
    """Expose application metrics for monitoring."""
    metrics_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if _session_count is not None:
        metrics_data["active_sessions"] = _session_count()
    return metrics_data
