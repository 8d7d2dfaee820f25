import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from api import state
from api.dependencies import get_rate_limiter, get_scheduler
from api.metrics import SYNC_IN_PROGRESS
from api.workers import SyncScheduler
from storage import db
from sync.rate_limiter import RateLimiter

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(
    scheduler: Optional[SyncScheduler] = Depends(get_scheduler),
    rate_limiter: Optional[RateLimiter] = Depends(get_rate_limiter),
) -> dict:
    """Liveness plus a summary of recent sync activity."""
    health = {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": round(time.time() - state.started_at, 1),
    }

    if scheduler is None:
        health["status"] = "starting"
        return health

    health["polling"] = {
        "interval_seconds": scheduler.poll_interval_s,
        "is_running": scheduler.is_running,
        "stats": scheduler.stats.as_dict(),
    }

    if rate_limiter is not None:
        health["rate_limiter"] = rate_limiter.get_stats()

    db_health = await db.health_check()
    health["database"] = db_health
    if db_health["status"] != "healthy":
        health["status"] = "degraded"

    return health


@router.get("/metrics")
async def metrics(
    scheduler: Optional[SyncScheduler] = Depends(get_scheduler),
) -> Response:
    """
    Prometheus scrape endpoint.
    """
    SYNC_IN_PROGRESS.set(1 if scheduler is not None and scheduler.is_running else 0)

    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
