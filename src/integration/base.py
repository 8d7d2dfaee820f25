from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class EventPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None
    # Only present on the last page of a listing
    next_sync_token: Optional[str] = None


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


class CalendarGateway(ABC):
    @abstractmethod
    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        cursor: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        order_by: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        """
        List one page of events.

        ``cursor`` and the time window/ordering are mutually exclusive: an
        incremental query is fully determined by its cursor.
        """
        raise NotImplementedError

    @abstractmethod
    async def create_event(
        self,
        access_token: str,
        calendar_id: str,
        body: Dict[str, Any],
        *,
        with_conference: bool = False,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def get_event(
        self, access_token: str, calendar_id: str, event_id: str
    ) -> Dict[str, Any]:
        raise NotImplementedError


class TokenEndpoint(ABC):
    @abstractmethod
    async def refresh(
        self, refresh_token: str, client_id: Optional[str], client_secret: Optional[str]
    ) -> TokenGrant:
        raise NotImplementedError
