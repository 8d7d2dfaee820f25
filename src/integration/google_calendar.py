import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from integration.base import CalendarGateway, EventPage
from sync.errors import RemoteApiError, TransientApiError, api_error_for_status

logger = logging.getLogger(__name__)

PAGE_SIZE = 250


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _translate(error: Exception) -> RemoteApiError:
    """Map client exceptions onto the sync error taxonomy, status code in the text."""
    if isinstance(error, HttpError):
        status = int(error.resp.status)
        detail = error.content.decode("utf-8", errors="replace") if error.content else ""
        return api_error_for_status(
            status, f"Google Calendar API error: {status} - {detail.strip()}"
        )
    return TransientApiError(f"Google Calendar network error: {error}")


class GoogleCalendarGateway(CalendarGateway):
    """Calendar v3 API access. The client library is blocking, so calls run in a thread."""

    def __init__(self, page_size: int = PAGE_SIZE):
        self.page_size = page_size

    def _service(self, access_token: str):
        credentials = Credentials(token=access_token)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    async def _execute(self, make_request):
        def run():
            try:
                return make_request().execute()
            except (HttpError, httplib2.HttpLib2Error, OSError) as e:
                raise _translate(e) from e

        return await asyncio.to_thread(run)

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
        if cursor and (time_min or time_max or order_by):
            raise ValueError("cursor queries cannot be combined with a time window or ordering")

        params: Dict[str, Any] = {
            "calendarId": calendar_id,
            "singleEvents": True,
            "maxResults": self.page_size,
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            if time_min:
                params["timeMin"] = _rfc3339(time_min)
            if time_max:
                params["timeMax"] = _rfc3339(time_max)
            if order_by:
                params["orderBy"] = order_by
        if page_token:
            params["pageToken"] = page_token

        service = self._service(access_token)
        data = await self._execute(lambda: service.events().list(**params))

        return EventPage(
            items=data.get("items", []),
            next_page_token=data.get("nextPageToken"),
            next_sync_token=data.get("nextSyncToken"),
        )

    async def create_event(
        self,
        access_token: str,
        calendar_id: str,
        body: Dict[str, Any],
        *,
        with_conference: bool = False,
    ) -> Dict[str, Any]:
        service = self._service(access_token)
        try:
            return await self._execute(
                lambda: service.events().insert(
                    calendarId=calendar_id,
                    body=body,
                    conferenceDataVersion=1 if with_conference else 0,
                )
            )
        except RemoteApiError as e:
            # 409: an earlier attempt already created this id
            if e.status != 409 or not body.get("id"):
                raise
            logger.info(f"Event {body['id']} already exists remotely, reusing it")
            return await self.get_event(access_token, calendar_id, body["id"])

    async def get_event(
        self, access_token: str, calendar_id: str, event_id: str
    ) -> Dict[str, Any]:
        service = self._service(access_token)
        return await self._execute(
            lambda: service.events().get(calendarId=calendar_id, eventId=event_id)
        )
