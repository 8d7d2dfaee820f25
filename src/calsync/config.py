from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the sync service. Defaults match production."""

    rate_limit_per_minute: int = 300
    rate_limit_window_s: float = 60.0
    rate_limit_floor_s: float = 1.0
    rate_limit_enabled: bool = True

    retry_attempts: int = 3
    retry_base_delay_s: float = 1.0

    max_integrations_per_batch: int = 50
    poll_interval_s: int = 60
    concurrency: int = 1

    orphan_sweep_probability: float = 0.1
    orphan_sweep_batch_limit: int = 100

    token_refresh_skew_s: float = 300.0

    shutdown_timeout_s: float = 30.0
    run_initial_sync: bool = True
    initial_sync_delay_s: float = 5.0

    full_sync_past_days: int = 30
    full_sync_future_days: int = 365

    def __post_init__(self) -> None:
        if not 5 <= self.poll_interval_s <= 3600:
            raise ValueError("POLLING_INTERVAL_SECONDS must be between 5 and 3600 seconds")
        if self.rate_limit_per_minute < 1:
            raise ValueError("rate limit must allow at least one request per window")
        if self.retry_attempts < 1:
            raise ValueError("RETRY_ATTEMPTS must be at least 1")
        if self.concurrency < 1:
            raise ValueError("SYNC_CONCURRENCY must be at least 1")

    @property
    def orphan_sweep_interval(self) -> int:
        """Run the orphan sweep every Nth sync of an integration; 0 disables it."""
        if self.orphan_sweep_probability <= 0:
            return 0
        return max(1, round(1 / self.orphan_sweep_probability))

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            rate_limit_per_minute=int(os.getenv("GOOGLE_API_RATE_LIMIT_PER_MINUTE", "300")),
            rate_limit_window_s=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
            retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
            retry_base_delay_s=int(os.getenv("RETRY_DELAY_MS", "1000")) / 1000.0,
            max_integrations_per_batch=int(os.getenv("MAX_INTEGRATIONS_PER_BATCH", "50")),
            poll_interval_s=int(os.getenv("POLLING_INTERVAL_SECONDS", "60")),
            concurrency=int(os.getenv("SYNC_CONCURRENCY", "1")),
            orphan_sweep_probability=float(os.getenv("ORPHAN_SWEEP_PROBABILITY", "0.1")),
            orphan_sweep_batch_limit=int(os.getenv("ORPHAN_SWEEP_BATCH_LIMIT", "100")),
            token_refresh_skew_s=float(os.getenv("TOKEN_REFRESH_SKEW_SECONDS", "300")),
            shutdown_timeout_s=float(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "30")),
            run_initial_sync=_env_bool("RUN_INITIAL_SYNC", "true"),
            initial_sync_delay_s=float(os.getenv("INITIAL_SYNC_DELAY_SECONDS", "5")),
        )
