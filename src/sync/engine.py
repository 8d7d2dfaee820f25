"""
Bidirectional reconciliation between local appointments and a remote calendar.

One run per integration executes three phases in order:

1. push  - local appointments without an external id are created remotely
2. pull  - remote changes (incremental via the sync cursor) are applied locally
3. sweep - every Nth run, local appointments whose remote event is gone are cancelled

Every remote effect is safe to repeat: pushed events get an id derived from
the appointment, pulls upsert on (tenant, external id), and cancellation of an
already-cancelled appointment is a no-op.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from calsync.models import (
    Appointment,
    AppointmentStatus,
    Integration,
    RemoteEvent,
)
from integration.base import CalendarGateway
from storage.base import AppointmentStore, IntegrationStore
from sync.errors import categorize_error, is_credential_failure, is_gone, is_rate_limited
from sync.metrics import NullSyncMetrics, SyncMetrics
from sync.rate_limiter import RateLimiter
from sync.retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Namespace for ids of events we create remotely (uuid hex is valid base32hex).
EVENT_ID_NAMESPACE = uuid.UUID("6f1c2a52-4d1e-4b8e-9c53-2f7a0f3d9b11")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remote_event_id(appointment: Appointment) -> str:
    return uuid.uuid5(EVENT_ID_NAMESPACE, f"{appointment.tenant_id}:{appointment.id}").hex


def meeting_link_of(event: Dict[str, Any]) -> Optional[str]:
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    if entry_points and entry_points[0].get("uri"):
        return entry_points[0]["uri"]
    return event.get("hangoutLink")


def build_event_body(appointment: Appointment, integration: Integration) -> Dict[str, Any]:
    """Remote event payload for a locally authored appointment."""
    if appointment.all_day:
        start_day = appointment.start_time.date()
        end_day = appointment.end_time.date()
        # All-day end dates are exclusive
        if end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        start = {"date": start_day.isoformat()}
        end = {"date": end_day.isoformat()}
    else:
        start = {"dateTime": appointment.start_time.isoformat(), "timeZone": integration.timezone}
        end = {"dateTime": appointment.end_time.isoformat(), "timeZone": integration.timezone}

    body: Dict[str, Any] = {
        "id": remote_event_id(appointment),
        "summary": appointment.title,
        "start": start,
        "end": end,
        "attendees": [{"email": a.email} for a in appointment.attendees],
    }
    if appointment.description:
        body["description"] = appointment.description
    if appointment.location:
        body["location"] = appointment.location

    if integration.auto_create_meet:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": f"meet-{appointment.id}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }

    return body


class SweepSchedule:
    """Runs the orphan sweep on every Nth sync of each integration."""

    def __init__(self, every: int = 10):
        self.every = every
        self._runs: Dict[str, int] = {}

    def should_run(self, integration_id: str) -> bool:
        if self.every <= 0:
            return False
        count = self._runs.get(integration_id, 0) + 1
        self._runs[integration_id] = count
        return count % self.every == 0


@dataclass
class SyncReport:
    integration_id: str

    pushed: int = 0
    push_failed: int = 0

    events_seen: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    cancelled: int = 0
    pull_failed: int = 0
    cursor_updated: bool = False

    sweep_ran: bool = False
    orphans_cancelled: int = 0
    probe_failed: int = 0

    stopped_early: bool = False
    phase_errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def events_processed(self) -> int:
        return self.events_seen


class ReconciliationEngine:
    def __init__(
        self,
        gateway: CalendarGateway,
        appointments: AppointmentStore,
        integrations: IntegrationStore,
        rate_limiter: RateLimiter,
        retry: RetryExecutor,
        metrics: Optional[SyncMetrics] = None,
        sweep_schedule: Optional[SweepSchedule] = None,
        sweep_batch_limit: int = 100,
        full_sync_past: timedelta = timedelta(days=30),
        full_sync_future: timedelta = timedelta(days=365),
        now: Callable[[], datetime] = _utcnow,
        log: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.appointments = appointments
        self.integrations = integrations
        self.rate_limiter = rate_limiter
        self.retry = retry
        self.metrics = metrics or NullSyncMetrics()
        self.sweep_schedule = sweep_schedule or SweepSchedule()
        self.sweep_batch_limit = sweep_batch_limit
        self.full_sync_past = full_sync_past
        self.full_sync_future = full_sync_future
        self._now = now
        self.logger = log or logger

    async def run(
        self,
        integration: Integration,
        access_token: str,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> SyncReport:
        """
        Run push, pull and sweep for one integration.

        A failing phase does not stop the next one, except for credential
        failures, after which every further call would be rejected too. The
        first phase failure is re-raised once the phases are done so the
        caller can flag the integration.
        """
        report = SyncReport(integration_id=integration.id)
        phases = (
            ("push", self.push_local),
            ("pull", self.pull_remote),
            ("sweep", self.sweep_orphans),
        )

        for index, (name, phase) in enumerate(phases, start=1):
            if should_stop is not None and should_stop():
                self.logger.info(
                    f"Stop requested, skipping remaining phases for integration {integration.id}"
                )
                report.stopped_early = True
                break

            self.logger.info(f"[{index}/3] {name} phase for integration {integration.id}")
            try:
                await phase(integration, access_token, report)
            except Exception as e:
                self.logger.error(f"{name} phase failed for integration {integration.id}: {e}")
                self.metrics.error(categorize_error(e))
                report.phase_errors[name] = e
                if is_credential_failure(e):
                    break

        if report.phase_errors:
            raise next(iter(report.phase_errors.values()))

        return report

    async def _remote(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """One logical remote call: each attempt takes a rate slot and is timed."""

        async def attempt() -> T:
            await self.rate_limiter.acquire()
            started = time.monotonic()
            try:
                result = await call()
            except Exception as e:
                self.metrics.api_call(operation, time.monotonic() - started, False)
                if is_rate_limited(e):
                    self.metrics.rate_limit_hit("remote")
                raise
            self.metrics.api_call(operation, time.monotonic() - started, True)
            return result

        return await self.retry.execute(attempt)

    # Phase A

    async def push_local(
        self, integration: Integration, access_token: str, report: SyncReport
    ) -> None:
        pending = await self.appointments.list_unsynced(
            integration.tenant_id, integration.calendar_id
        )
        if not pending:
            self.logger.debug(f"No local appointments to push for tenant {integration.tenant_id}")
            return

        self.logger.info(
            f"Pushing {len(pending)} local appointment(s) for tenant {integration.tenant_id}"
        )

        for appointment in pending:
            if appointment.external_id is not None or appointment.is_cancelled:
                continue
            try:
                body = build_event_body(appointment, integration)
                created = await self._remote(
                    "create_event",
                    lambda: self.gateway.create_event(
                        access_token,
                        integration.calendar_id,
                        body,
                        with_conference=integration.auto_create_meet,
                    ),
                )
                await self.appointments.attach_external_id(
                    appointment.id, created["id"], meeting_link_of(created)
                )
                report.pushed += 1
                self.metrics.event_processed("created_remote")
                self.logger.info(
                    f"Pushed appointment {appointment.id} as remote event {created['id']}"
                )
            except Exception as e:
                report.push_failed += 1
                self.metrics.error(categorize_error(e))
                self.logger.error(f"Failed to push appointment {appointment.id}: {e}")

    # Phase B

    async def pull_remote(
        self, integration: Integration, access_token: str, report: SyncReport
    ) -> None:
        cursor = integration.sync_cursor
        try:
            new_cursor = await self._pull_pass(integration, access_token, cursor, report)
        except Exception as e:
            if cursor is None or not _cursor_expired(e):
                raise
            self.logger.warning(
                f"Sync cursor for integration {integration.id} expired, running a full sync"
            )
            new_cursor = await self._pull_pass(integration, access_token, None, report)

        if new_cursor:
            await self.integrations.update_cursor(integration.id, new_cursor)
            integration.sync_cursor = new_cursor
            report.cursor_updated = True

    async def _pull_pass(
        self,
        integration: Integration,
        access_token: str,
        cursor: Optional[str],
        report: SyncReport,
    ) -> Optional[str]:
        if cursor:
            query: Dict[str, Any] = {"cursor": cursor}
        else:
            now = self._now()
            query = {
                "time_min": now - self.full_sync_past,
                "time_max": now + self.full_sync_future,
                "order_by": "startTime",
            }

        page_token: Optional[str] = None
        while True:
            page = await self._remote(
                "list_events",
                lambda: self.gateway.list_events(
                    access_token, integration.calendar_id, page_token=page_token, **query
                ),
            )

            for item in page.items:
                report.events_seen += 1
                await self._apply_remote_event(integration, item, report)

            if not page.next_page_token:
                return page.next_sync_token
            page_token = page.next_page_token

    async def _apply_remote_event(
        self, integration: Integration, item: Dict[str, Any], report: SyncReport
    ) -> None:
        try:
            event = RemoteEvent.from_api(item)
            if event.is_cancelled:
                await self._cancel_from_remote(integration, event, report)
            else:
                await self._upsert_from_remote(integration, event, report)
        except Exception as e:
            report.pull_failed += 1
            self.metrics.error(categorize_error(e))
            self.logger.error(
                f"Error processing remote event {item.get('id')} for tenant "
                f"{integration.tenant_id}: {e}"
            )

    async def _cancel_from_remote(
        self, integration: Integration, event: RemoteEvent, report: SyncReport
    ) -> None:
        existing = await self.appointments.get_by_external_id(integration.tenant_id, event.id)
        if existing is None or existing.is_cancelled:
            return

        if await self.appointments.cancel(existing.id):
            report.cancelled += 1
            self.metrics.event_processed("cancelled")
            self.logger.debug(f"Cancelled appointment {existing.id} (remote event {event.id})")

    async def _upsert_from_remote(
        self, integration: Integration, event: RemoteEvent, report: SyncReport
    ) -> None:
        fields = {
            "title": event.summary,
            "description": event.description,
            "start_time": event.start,
            "end_time": event.end,
            "location": event.location,
            "meeting_link": event.meeting_link,
            "attendees": event.attendees,
            "all_day": event.all_day,
            "status": AppointmentStatus.SCHEDULED,
        }
        existing = await self.appointments.get_by_external_id(integration.tenant_id, event.id)
        now = self._now()

        if existing is None:
            appointment = Appointment(
                id=str(uuid.uuid4()),
                tenant_id=integration.tenant_id,
                calendar_id=integration.calendar_id,
                external_id=event.id,
                created_at=now,
                updated_at=now,
                **fields,
            )
            saved = await self.appointments.upsert(appointment)
            report.created += 1
            self.metrics.event_processed("created")
            self.logger.debug(f"Created appointment {saved.id} from remote event {event.id}")
            return

        if all(getattr(existing, name) == value for name, value in fields.items()):
            report.unchanged += 1
            return

        # id, owner and created_at survive the update
        updated = existing.model_copy(update={**fields, "updated_at": now})
        await self.appointments.upsert(updated)
        report.updated += 1
        self.metrics.event_processed("updated")
        self.logger.debug(f"Updated appointment {existing.id} from remote event {event.id}")

    # Phase C

    async def sweep_orphans(
        self, integration: Integration, access_token: str, report: SyncReport
    ) -> None:
        if not self.sweep_schedule.should_run(integration.id):
            self.logger.debug(f"Skipping orphan sweep for integration {integration.id} this cycle")
            return

        report.sweep_ran = True
        candidates = await self.appointments.list_synced(
            integration.tenant_id, integration.calendar_id, limit=self.sweep_batch_limit
        )
        if not candidates:
            return

        self.logger.info(
            f"Checking {len(candidates)} synced appointment(s) for tenant {integration.tenant_id}"
        )

        for appointment in candidates:
            if appointment.is_cancelled or not appointment.external_id:
                continue
            try:
                if not await self._remote_event_gone(integration, access_token, appointment):
                    continue
                if await self.appointments.cancel(appointment.id):
                    report.orphans_cancelled += 1
                    self.metrics.event_processed("orphan_cleaned")
                    self.logger.info(
                        f"Cancelled orphaned appointment {appointment.id} "
                        f"(remote event {appointment.external_id} is gone)"
                    )
            except Exception as e:
                # Never read an unknown failure as "gone"
                report.probe_failed += 1
                self.metrics.error(categorize_error(e))
                self.logger.error(
                    f"Error checking remote event {appointment.external_id} "
                    f"for appointment {appointment.id}: {e}"
                )

    async def _remote_event_gone(
        self, integration: Integration, access_token: str, appointment: Appointment
    ) -> bool:
        try:
            await self._remote(
                "get_event",
                lambda: self.gateway.get_event(
                    access_token, integration.calendar_id, appointment.external_id
                ),
            )
        except Exception as e:
            if is_gone(e):
                return True
            raise
        return False


def _cursor_expired(exc: BaseException) -> bool:
    status = getattr(exc, "status", None)
    if status is not None:
        return status == 410
    return "410" in str(exc)
