import logging
from datetime import datetime
from typing import List, Optional

from calsync.models import Integration, IntegrationStatus
from storage import db
from storage.base import IntegrationStore
from storage.crypto import TokenCipher

logger = logging.getLogger(__name__)

_INTEGRATION_COLUMNS = """
    id, tenant_id, client_id, client_secret, access_token, refresh_token,
    token_expires_at, calendar_id, timezone, auto_create_meet, sync_cursor,
    is_active, sync_enabled, status, last_sync_at
"""


class PostgresIntegrationStore(IntegrationStore):
    def __init__(self, cipher: Optional[TokenCipher] = None):
        self.cipher = cipher or TokenCipher()

    def _from_record(self, record) -> Integration:
        return Integration(
            id=str(record["id"]),
            tenant_id=str(record["tenant_id"]),
            client_id=record["client_id"],
            client_secret=record["client_secret"],
            access_token=self.cipher.decrypt(record["access_token"]),
            refresh_token=self.cipher.decrypt(record["refresh_token"]),
            token_expires_at=record["token_expires_at"],
            calendar_id=record["calendar_id"],
            timezone=record["timezone"],
            auto_create_meet=record["auto_create_meet"],
            sync_cursor=record["sync_cursor"],
            enabled=record["is_active"],
            sync_enabled=record["sync_enabled"],
            status=IntegrationStatus(record["status"]),
            last_sync_at=record["last_sync_at"],
        )

    async def check_connection(self) -> None:
        await db.check_connection()
        await db.fetchval("SELECT COUNT(*) FROM calendar_integrations")

    async def list_eligible(self, limit: Optional[int] = None) -> List[Integration]:
        query = f"""
            SELECT {_INTEGRATION_COLUMNS}
            FROM calendar_integrations
            WHERE is_active = TRUE
              AND status = 'connected'
              AND sync_enabled = TRUE
              AND access_token IS NOT NULL
            ORDER BY last_sync_at ASC NULLS FIRST
            LIMIT $1
        """
        records = await db.fetch(query, limit)
        logger.debug(f"Found {len(records)} eligible integrations")
        return [self._from_record(r) for r in records]

    async def update_cursor(self, integration_id: str, cursor: Optional[str]) -> None:
        await db.execute(
            """
            UPDATE calendar_integrations
            SET sync_cursor = $2,
                last_sync_at = NOW(),
                updated_at = NOW()
            WHERE id = $1
            """,
            integration_id,
            cursor,
        )
        logger.debug(f"Updated sync cursor for integration {integration_id}")

    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> None:
        # Keep the stored refresh token when the grant did not rotate it
        await db.execute(
            """
            UPDATE calendar_integrations
            SET access_token = $2,
                refresh_token = COALESCE($3, refresh_token),
                token_expires_at = $4,
                updated_at = NOW()
            WHERE id = $1
            """,
            integration_id,
            self.cipher.encrypt(access_token),
            self.cipher.encrypt(refresh_token),
            expires_at,
        )
        logger.debug(f"Updated tokens for integration {integration_id}")

    async def mark_error(self, integration_id: str, message: str) -> None:
        await db.execute(
            """
            UPDATE calendar_integrations
            SET status = 'error',
                last_error = $2,
                updated_at = NOW()
            WHERE id = $1
            """,
            integration_id,
            message[:1000],
        )
        logger.warning(f"Marked integration {integration_id} as error: {message}")
