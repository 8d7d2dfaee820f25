import asyncio

from calsync.models import AppointmentStatus
from conftest import make_appointment, make_integration, remote_event
from sync.engine import SweepSchedule, SyncReport
from sync.errors import TerminalApiError, TransientApiError


def _sweep(engine, integration):
    report = SyncReport(integration_id=integration.id)
    asyncio.run(engine.sweep_orphans(integration, integration.access_token, report))
    return report


def test_deleted_remote_event_cancels_local_appointment(engine_factory, gateway, appointment_store) -> None:
    orphan = make_appointment(external_id="gone-1")
    appointment_store.appointments[orphan.id] = orphan
    gateway.get_errors["gone-1"] = TerminalApiError(
        "Google Calendar API error: 410 - Resource has been deleted", status=410
    )
    engine = engine_factory(sweep_every=1)
    integration = make_integration()

    first = _sweep(engine, integration)
    second = _sweep(engine, integration)

    assert first.orphans_cancelled == 1
    assert second.orphans_cancelled == 0
    assert appointment_store.cancels == 1
    assert appointment_store.appointments[orphan.id].status == AppointmentStatus.CANCELLED


def test_not_found_also_counts_as_gone(engine_factory, appointment_store) -> None:
    orphan = make_appointment(external_id="missing")
    appointment_store.appointments[orphan.id] = orphan

    report = _sweep(engine_factory(sweep_every=1), make_integration())

    assert report.orphans_cancelled == 1


def test_server_error_never_cancels(engine_factory, gateway, appointment_store, clock) -> None:
    kept = make_appointment(external_id="flaky")
    appointment_store.appointments[kept.id] = kept
    gateway.get_errors["flaky"] = TransientApiError(
        "Google Calendar API error: 500 - backend error", status=500
    )

    report = _sweep(engine_factory(sweep_every=1), make_integration())

    assert report.orphans_cancelled == 0
    assert report.probe_failed == 1
    assert gateway.get_calls == ["flaky"] * 3
    assert clock.sleeps == [1.0, 2.0]
    assert appointment_store.appointments[kept.id].status == AppointmentStatus.SCHEDULED


def test_existing_remote_event_is_kept(engine_factory, gateway, appointment_store) -> None:
    present = make_appointment(external_id="e1")
    appointment_store.appointments[present.id] = present
    gateway.events["e1"] = remote_event("e1")

    report = _sweep(engine_factory(sweep_every=1), make_integration())

    assert report.sweep_ran
    assert report.orphans_cancelled == 0
    assert appointment_store.cancels == 0


def test_sweep_only_probes_the_integrations_calendar(engine_factory, gateway, appointment_store) -> None:
    elsewhere = make_appointment(external_id="other-cal", calendar_id="team@example.com")
    other_tenant = make_appointment(
        id="33333333-3333-3333-3333-333333333333", tenant_id="tenant-2", external_id="other-tenant"
    )
    for a in (elsewhere, other_tenant):
        appointment_store.appointments[a.id] = a

    report = _sweep(engine_factory(sweep_every=1), make_integration())

    assert gateway.get_calls == []
    assert report.orphans_cancelled == 0


def test_sweep_skipped_when_not_scheduled(engine_factory, gateway, appointment_store) -> None:
    orphan = make_appointment(external_id="gone-1")
    appointment_store.appointments[orphan.id] = orphan

    report = _sweep(engine_factory(sweep_every=0), make_integration())

    assert not report.sweep_ran
    assert gateway.get_calls == []


def test_schedule_runs_every_nth_time_per_integration() -> None:
    schedule = SweepSchedule(every=3)

    runs = [schedule.should_run("a") for _ in range(6)]

    assert runs == [False, False, True, False, False, True]
    assert schedule.should_run("b") is False
    assert SweepSchedule(every=0).should_run("a") is False
