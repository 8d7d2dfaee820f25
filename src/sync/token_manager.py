from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from calsync.models import Integration
from integration.base import TokenEndpoint
from storage.base import IntegrationStore
from sync.errors import AuthError
from sync.retry import RetryExecutor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Hands out a usable access token per integration, refreshing ahead of expiry."""

    def __init__(
        self,
        endpoint: TokenEndpoint,
        store: IntegrationStore,
        retry: RetryExecutor,
        skew: timedelta = timedelta(minutes=5),
        now: Callable[[], datetime] = _utcnow,
    ):
        self.endpoint = endpoint
        self.store = store
        self.retry = retry
        self.skew = skew
        self._now = now

    def needs_refresh(self, integration: Integration) -> bool:
        if not integration.access_token or integration.token_expires_at is None:
            return True

        expires_at = integration.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - self._now() <= self.skew

    async def ensure_valid(self, integration: Integration) -> str:
        if not self.needs_refresh(integration):
            return integration.access_token

        if not integration.refresh_token:
            raise AuthError(f"No refresh token available for integration {integration.id}")

        logger.debug(f"Token expiring soon, refreshing (integration {integration.id})")

        refresh_token = integration.refresh_token
        grant = await self.retry.execute(
            lambda: self.endpoint.refresh(
                refresh_token, integration.client_id, integration.client_secret
            )
        )

        # Google only sometimes rotates the refresh token
        new_refresh_token = grant.refresh_token or refresh_token
        expires_at = self._now() + timedelta(seconds=grant.expires_in)

        await self.store.update_tokens(
            integration.id, grant.access_token, new_refresh_token, expires_at
        )

        integration.access_token = grant.access_token
        integration.refresh_token = new_refresh_token
        integration.token_expires_at = expires_at

        logger.info(f"Refreshed access token for integration {integration.id}")
        return grant.access_token
