from __future__ import annotations

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Owner used for pulled appointments when the tenant has no administrator.
SYSTEM_OWNER_ID = "00000000-0000-0000-0000-000000000000"

UNTITLED_EVENT = "Untitled event"


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    DISABLED = "disabled"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class Attendee(BaseModel):
    email: str
    display_name: Optional[str] = None
    response_status: Optional[str] = None


class Integration(BaseModel):
    """A tenant's connection to one remote calendar."""

    id: str
    tenant_id: str

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    calendar_id: str = "primary"
    timezone: str = "UTC"
    auto_create_meet: bool = False

    sync_cursor: Optional[str] = None
    enabled: bool = True
    sync_enabled: bool = True
    status: IntegrationStatus = IntegrationStatus.CONNECTED
    last_sync_at: Optional[datetime] = None

    @property
    def is_eligible(self) -> bool:
        return (
            self.enabled
            and self.sync_enabled
            and self.status == IntegrationStatus.CONNECTED
            and bool(self.access_token)
        )


class Appointment(BaseModel):
    id: str
    tenant_id: str
    calendar_id: str = "primary"

    # None means authored locally and not pushed yet
    external_id: Optional[str] = None

    start_time: datetime
    end_time: datetime
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    meeting_link: Optional[str] = None
    all_day: bool = False

    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("title must not be blank")
        return v2

    @property
    def is_cancelled(self) -> bool:
        return self.status == AppointmentStatus.CANCELLED


# Fields a pull is allowed to overwrite on an existing appointment.
MUTABLE_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "meeting_link",
    "attendees",
    "all_day",
    "status",
)


def _parse_event_time(value: Dict[str, Any]) -> tuple[datetime, bool]:
    """Return (instant, all_day) for a Google ``start``/``end`` object."""
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed, False
    day = date.fromisoformat(value["date"])
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc), True


class RemoteEvent(BaseModel):
    """The parts of a remote calendar event the sync cares about."""

    id: str
    status: str = "confirmed"
    summary: str = UNTITLED_EVENT
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    attendees: List[Attendee] = Field(default_factory=list)
    meeting_link: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteEvent":
        # Cancelled entries from an incremental query carry little more than id/status
        if payload.get("status") == "cancelled":
            return cls(id=payload["id"], status="cancelled")

        start, all_day = _parse_event_time(payload["start"])
        end, _ = _parse_event_time(payload.get("end") or payload["start"])

        meeting_link = None
        entry_points = (payload.get("conferenceData") or {}).get("entryPoints") or []
        if entry_points:
            meeting_link = entry_points[0].get("uri")
        meeting_link = meeting_link or payload.get("hangoutLink")

        attendees = [
            Attendee(
                email=a["email"],
                display_name=a.get("displayName"),
                response_status=a.get("responseStatus"),
            )
            for a in payload.get("attendees") or []
            if a.get("email")
        ]

        return cls(
            id=payload["id"],
            status=payload.get("status", "confirmed"),
            summary=(payload.get("summary") or "").strip() or UNTITLED_EVENT,
            description=payload.get("description"),
            location=payload.get("location"),
            start=start,
            end=end,
            all_day=all_day,
            attendees=attendees,
            meeting_link=meeting_link,
        )
