import time
from typing import Optional

from api.workers import SyncScheduler
from calsync.config import SyncSettings
from integration.oauth import GoogleTokenEndpoint
from sync.rate_limiter import RateLimiter

started_at = time.time()

# Global instances initialized at startup
settings: Optional[SyncSettings] = None
scheduler: Optional[SyncScheduler] = None
rate_limiter: Optional[RateLimiter] = None
token_endpoint: Optional[GoogleTokenEndpoint] = None
