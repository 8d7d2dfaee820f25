from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from calsync.models import Appointment, Integration


class IntegrationStore(ABC):
    @abstractmethod
    async def check_connection(self) -> None:
        """Raise StoreError when the database cannot be reached."""
        raise NotImplementedError

    @abstractmethod
    async def list_eligible(self, limit: Optional[int] = None) -> List[Integration]:
        """Enabled, connected, sync-enabled integrations holding an access token."""
        raise NotImplementedError

    @abstractmethod
    async def update_cursor(self, integration_id: str, cursor: Optional[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> None:
        """Persist all three token fields in one write."""
        raise NotImplementedError

    @abstractmethod
    async def mark_error(self, integration_id: str, message: str) -> None:
        raise NotImplementedError


class AppointmentStore(ABC):
    @abstractmethod
    async def list_unsynced(self, tenant_id: str, calendar_id: str) -> List[Appointment]:
        """Non-cancelled appointments with no external id, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def list_synced(
        self, tenant_id: str, calendar_id: str, limit: int = 100
    ) -> List[Appointment]:
        """Non-cancelled appointments carrying an external id, newest first."""
        raise NotImplementedError

    @abstractmethod
    async def get_by_external_id(
        self, tenant_id: str, external_id: str
    ) -> Optional[Appointment]:
        raise NotImplementedError

    @abstractmethod
    async def attach_external_id(
        self, appointment_id: str, external_id: str, meeting_link: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def cancel(self, appointment_id: str) -> bool:
        """Set status to cancelled. Returns False if it already was."""
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, appointment: Appointment) -> Appointment:
        """
        Insert or update keyed on (tenant_id, external_id).

        A missing owner is resolved with ``resolve_owner``.
        """
        raise NotImplementedError

    @abstractmethod
    async def resolve_owner(self, tenant_id: str) -> str:
        """The tenant's admin user, or SYSTEM_OWNER_ID when there is none."""
        raise NotImplementedError
