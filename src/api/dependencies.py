from typing import Optional

from api import state
from api.workers import SyncScheduler
from sync.rate_limiter import RateLimiter


def get_scheduler() -> Optional[SyncScheduler]:
    return state.scheduler


def get_rate_limiter() -> Optional[RateLimiter]:
    return state.rate_limiter
