import asyncio
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from calsync.models import SYSTEM_OWNER_ID, Attendee, IntegrationStatus
from conftest import NOW, make_appointment
from storage import db
from storage.appointment_store import PostgresAppointmentStore
from storage.crypto import TokenCipher
from storage.integration_store import PostgresIntegrationStore


class RecordingDb:
    """Stands in for the storage.db helpers and returns canned rows."""

    def __init__(self, monkeypatch):
        self.queries = []
        self.rows = []
        self.row = None
        self.value = None
        self.status = "UPDATE 1"
        for name in ("execute", "fetch", "fetchrow", "fetchval"):
            monkeypatch.setattr(db, name, getattr(self, name))

    async def execute(self, query, *args):
        self.queries.append((query, args))
        return self.status

    async def fetch(self, query, *args):
        self.queries.append((query, args))
        return self.rows

    async def fetchrow(self, query, *args):
        self.queries.append((query, args))
        return self.row

    async def fetchval(self, query, *args):
        self.queries.append((query, args))
        return self.value


@pytest.fixture
def fake_db(monkeypatch):
    return RecordingDb(monkeypatch)


def _integration_row(cipher, **overrides):
    row = {
        "id": "int-1",
        "tenant_id": "tenant-1",
        "client_id": "cid",
        "client_secret": "secret",
        "access_token": cipher.encrypt("access"),
        "refresh_token": cipher.encrypt("refresh"),
        "token_expires_at": NOW + timedelta(hours=1),
        "calendar_id": "primary",
        "timezone": "Europe/Berlin",
        "auto_create_meet": True,
        "sync_cursor": None,
        "is_active": True,
        "sync_enabled": True,
        "status": "connected",
        "last_sync_at": None,
    }
    row.update(overrides)
    return row


def _appointment_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "tenant_id": "tenant-1",
        "calendar_id": "primary",
        "external_id": "e1",
        "start_time": NOW,
        "end_time": NOW + timedelta(hours=1),
        "title": "Consultation",
        "description": None,
        "location": None,
        "attendees": [{"email": "a@example.com"}],
        "meeting_link": None,
        "all_day": False,
        "status": "scheduled",
        "owner_id": "owner-1",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_eligible_integrations_are_decrypted(fake_db) -> None:
    cipher = TokenCipher(Fernet.generate_key().decode())
    fake_db.rows = [_integration_row(cipher)]

    integrations = asyncio.run(PostgresIntegrationStore(cipher).list_eligible(limit=25))

    assert integrations[0].access_token == "access"
    assert integrations[0].refresh_token == "refresh"
    assert integrations[0].status == IntegrationStatus.CONNECTED
    assert integrations[0].timezone == "Europe/Berlin"
    query, args = fake_db.queries[0]
    assert "NULLS FIRST" in query
    assert args == (25,)


def test_token_update_encrypts_and_keeps_unrotated_refresh_token(fake_db) -> None:
    cipher = TokenCipher(Fernet.generate_key().decode())
    expires = NOW + timedelta(hours=1)

    asyncio.run(PostgresIntegrationStore(cipher).update_tokens("int-1", "new-access", None, expires))

    query, args = fake_db.queries[0]
    assert "COALESCE($3, refresh_token)" in query
    assert cipher.decrypt(args[1]) == "new-access"
    assert args[2] is None
    assert args[3] == expires


def test_mark_error_stores_message(fake_db) -> None:
    asyncio.run(PostgresIntegrationStore(TokenCipher()).mark_error("int-1", "invalid_grant"))

    query, args = fake_db.queries[0]
    assert "status = 'error'" in query
    assert args == ("int-1", "invalid_grant")


def test_cancel_reports_whether_a_row_changed(fake_db) -> None:
    store = PostgresAppointmentStore()

    assert asyncio.run(store.cancel("a1")) is True
    fake_db.status = "UPDATE 0"
    assert asyncio.run(store.cancel("a1")) is False


def test_owner_falls_back_to_system_owner(fake_db) -> None:
    store = PostgresAppointmentStore()

    assert asyncio.run(store.resolve_owner("tenant-1")) == SYSTEM_OWNER_ID
    fake_db.value = "admin-3"
    assert asyncio.run(store.resolve_owner("tenant-1")) == "admin-3"


def test_upsert_resolves_missing_owner(fake_db) -> None:
    fake_db.value = "admin-3"
    fake_db.row = _appointment_row(owner_id="admin-3")
    appointment = make_appointment(
        external_id="e1", owner_id=None, attendees=[Attendee(email="a@example.com")]
    )

    saved = asyncio.run(PostgresAppointmentStore().upsert(appointment))

    insert_query, args = fake_db.queries[-1]
    assert "ON CONFLICT (tenant_id, external_id)" in insert_query
    assert args[13] == "admin-3"
    assert args[9][0]["email"] == "a@example.com"
    assert saved.owner_id == "admin-3"
    assert saved.attendees[0].email == "a@example.com"


def test_upsert_requires_external_id(fake_db) -> None:
    with pytest.raises(ValueError):
        asyncio.run(PostgresAppointmentStore().upsert(make_appointment()))
    assert fake_db.queries == []


def test_unsynced_listing_is_scoped_to_calendar(fake_db) -> None:
    fake_db.rows = [_appointment_row(external_id=None)]

    pending = asyncio.run(PostgresAppointmentStore().list_unsynced("tenant-1", "primary"))

    query, args = fake_db.queries[0]
    assert "external_id IS NULL" in query
    assert args == ("tenant-1", "primary")
    assert pending[0].external_id is None
