from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from calsync.models import (
    SYSTEM_OWNER_ID,
    MUTABLE_FIELDS,
    Appointment,
    AppointmentStatus,
    Integration,
    IntegrationStatus,
)
from integration.base import CalendarGateway, EventPage, TokenEndpoint, TokenGrant
from storage.base import AppointmentStore, IntegrationStore
from sync.engine import ReconciliationEngine, SweepSchedule
from sync.errors import TerminalApiError
from sync.metrics import SyncMetrics
from sync.rate_limiter import RateLimiter
from sync.retry import RetryExecutor

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingMetrics(SyncMetrics):
    def __init__(self):
        self.calls = []

    def _record(self, *args):
        self.calls.append(args)

    def names(self, kind):
        return [c[1:] for c in self.calls if c[0] == kind]

    def cycle_started(self):
        self._record("cycle_started")

    def cycle_finished(self, duration_s, success, processed, succeeded, failed):
        self._record("cycle_finished", success, processed, succeeded, failed)

    def integration_started(self, integration_id):
        self._record("integration_started", integration_id)

    def integration_succeeded(self, integration_id, duration_s, events_processed):
        self._record("integration_succeeded", integration_id, events_processed)

    def integration_failed(self, integration_id, duration_s, category):
        self._record("integration_failed", integration_id, category)

    def api_call(self, operation, duration_s, success):
        self._record("api_call", operation, success)

    def rate_limit_hit(self, source):
        self._record("rate_limit_hit", source)

    def error(self, category):
        self._record("error", category)

    def event_processed(self, action):
        self._record("event_processed", action)


class InMemoryIntegrationStore(IntegrationStore):
    def __init__(self, integrations: Optional[List[Integration]] = None):
        self.integrations: Dict[str, Integration] = {i.id: i for i in integrations or []}
        self.cursor_updates: List[tuple] = []
        self.token_updates: List[tuple] = []
        self.errors: Dict[str, str] = {}
        self.fail_listing: Optional[Exception] = None

    async def check_connection(self):
        return None

    async def list_eligible(self, limit=None):
        if self.fail_listing is not None:
            raise self.fail_listing
        eligible = [i for i in self.integrations.values() if i.is_eligible]
        return eligible[:limit] if limit else eligible

    async def update_cursor(self, integration_id, cursor):
        self.cursor_updates.append((integration_id, cursor))
        self.integrations[integration_id].sync_cursor = cursor

    async def update_tokens(self, integration_id, access_token, refresh_token, expires_at):
        self.token_updates.append((integration_id, access_token, refresh_token, expires_at))

    async def mark_error(self, integration_id, message):
        self.errors[integration_id] = message
        self.integrations[integration_id].status = IntegrationStatus.ERROR


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self, appointments: Optional[List[Appointment]] = None, admins=None):
        self.appointments: Dict[str, Appointment] = {a.id: a for a in appointments or []}
        self.admins: Dict[str, str] = admins or {}
        self.upserts = 0
        self.cancels = 0
        self.fail_upsert_for: set = set()

    async def list_unsynced(self, tenant_id, calendar_id):
        return [
            a.model_copy()
            for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.calendar_id == calendar_id
            and a.external_id is None
            and a.status != AppointmentStatus.CANCELLED
        ]

    async def list_synced(self, tenant_id, calendar_id, limit=100):
        return [
            a.model_copy()
            for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.calendar_id == calendar_id
            and a.external_id is not None
            and a.status != AppointmentStatus.CANCELLED
        ][:limit]

    async def get_by_external_id(self, tenant_id, external_id):
        for a in self.appointments.values():
            if a.tenant_id == tenant_id and a.external_id == external_id:
                return a.model_copy()
        return None

    async def attach_external_id(self, appointment_id, external_id, meeting_link=None):
        current = self.appointments[appointment_id]
        self.appointments[appointment_id] = current.model_copy(
            update={
                "external_id": external_id,
                "meeting_link": meeting_link or current.meeting_link,
            }
        )

    async def cancel(self, appointment_id):
        current = self.appointments[appointment_id]
        if current.status == AppointmentStatus.CANCELLED:
            return False
        self.cancels += 1
        self.appointments[appointment_id] = current.model_copy(
            update={"status": AppointmentStatus.CANCELLED}
        )
        return True

    async def resolve_owner(self, tenant_id):
        return self.admins.get(tenant_id, SYSTEM_OWNER_ID)

    async def upsert(self, appointment):
        if appointment.external_id in self.fail_upsert_for:
            raise RuntimeError(f"database write failed for {appointment.external_id}")
        self.upserts += 1

        existing = None
        for a in self.appointments.values():
            if a.tenant_id == appointment.tenant_id and a.external_id == appointment.external_id:
                existing = a
        if existing is not None:
            updated = existing.model_copy(
                update={name: getattr(appointment, name) for name in MUTABLE_FIELDS}
            )
            self.appointments[existing.id] = updated
            return updated

        owner = appointment.owner_id or await self.resolve_owner(appointment.tenant_id)
        created = appointment.model_copy(update={"owner_id": owner})
        self.appointments[created.id] = created
        return created

    def by_external_id(self, external_id):
        return [a for a in self.appointments.values() if a.external_id == external_id]


def not_found(event_id):
    return TerminalApiError(f"Google Calendar API error: 404 - event {event_id} not found", status=404)


class FakeGateway(CalendarGateway):
    def __init__(self):
        self.events: Dict[str, dict] = {}
        self.list_responses: List = []
        self.next_sync_token: Optional[str] = "cursor-1"
        self.list_calls: List[dict] = []
        self.create_calls: List[dict] = []
        self.create_errors: Dict[str, Exception] = {}
        self.get_calls: List[str] = []
        self.get_errors: Dict[str, Exception] = {}

    async def list_events(
        self,
        access_token,
        calendar_id,
        *,
        cursor=None,
        time_min=None,
        time_max=None,
        order_by=None,
        page_token=None,
    ):
        self.list_calls.append(
            {
                "cursor": cursor,
                "time_min": time_min,
                "time_max": time_max,
                "order_by": order_by,
                "page_token": page_token,
            }
        )
        if self.list_responses:
            response = self.list_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return EventPage(items=list(self.events.values()), next_sync_token=self.next_sync_token)

    async def create_event(self, access_token, calendar_id, body, *, with_conference=False):
        self.create_calls.append(body)
        if body.get("summary") in self.create_errors:
            raise self.create_errors[body["summary"]]
        event = dict(body)
        if with_conference:
            event["conferenceData"] = {"entryPoints": [{"uri": f"https://meet.example/{body['id']}"}]}
        self.events[event["id"]] = event
        return event

    async def get_event(self, access_token, calendar_id, event_id):
        self.get_calls.append(event_id)
        if event_id in self.get_errors:
            raise self.get_errors[event_id]
        if event_id not in self.events:
            raise not_found(event_id)
        return self.events[event_id]


class FakeTokenEndpoint(TokenEndpoint):
    def __init__(self, grant: Optional[TokenGrant] = None, error: Optional[Exception] = None):
        self.grant = grant or TokenGrant(access_token="fresh-token", expires_in=3600)
        self.error = error
        self.calls = 0

    async def refresh(self, refresh_token, client_id, client_secret):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.grant


def make_integration(**overrides) -> Integration:
    values = dict(
        id="int-1",
        tenant_id="tenant-1",
        client_id="client-id",
        client_secret="client-secret",
        access_token="access-token",
        refresh_token="refresh-token",
        token_expires_at=NOW + timedelta(hours=1),
        calendar_id="primary",
    )
    values.update(overrides)
    return Integration(**values)


def make_appointment(**overrides) -> Appointment:
    values = dict(
        id="11111111-1111-1111-1111-111111111111",
        tenant_id="tenant-1",
        calendar_id="primary",
        start_time=NOW + timedelta(days=1),
        end_time=NOW + timedelta(days=1, hours=1),
        title="Consultation",
        owner_id="owner-1",
        created_at=NOW - timedelta(days=2),
    )
    values.update(overrides)
    return Appointment(**values)


def remote_event(event_id, summary="Team sync", status="confirmed", **extra) -> dict:
    event = {
        "id": event_id,
        "status": status,
        "summary": summary,
        "start": {"dateTime": "2026-03-05T10:00:00Z"},
        "end": {"dateTime": "2026-03-05T11:00:00Z"},
    }
    event.update(extra)
    return event


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def appointment_store():
    return InMemoryAppointmentStore()


@pytest.fixture
def integration_store():
    return InMemoryIntegrationStore([make_integration()])


@pytest.fixture
def engine_factory(gateway, appointment_store, integration_store, metrics, clock):
    def _make(sweep_every: int = 0, max_attempts: int = 3) -> ReconciliationEngine:
        return ReconciliationEngine(
            gateway=gateway,
            appointments=appointment_store,
            integrations=integration_store,
            rate_limiter=RateLimiter(capacity=1000, clock=clock, sleep=clock.sleep),
            retry=RetryExecutor(max_attempts=max_attempts, base_delay_s=1.0, sleep=clock.sleep),
            metrics=metrics,
            sweep_schedule=SweepSchedule(every=sweep_every),
            now=lambda: NOW,
        )
    return _make
