import logging
from typing import List, Optional

from calsync.models import SYSTEM_OWNER_ID, Appointment, AppointmentStatus, Attendee
from storage import db
from storage.base import AppointmentStore

logger = logging.getLogger(__name__)


def appointment_from_record(record) -> Appointment:
    return Appointment(
        id=str(record["id"]),
        tenant_id=str(record["tenant_id"]),
        calendar_id=record["calendar_id"],
        external_id=record["external_id"],
        start_time=record["start_time"],
        end_time=record["end_time"],
        title=record["title"],
        description=record["description"],
        location=record["location"],
        attendees=[Attendee(**a) for a in record["attendees"] or []],
        meeting_link=record["meeting_link"],
        all_day=record["all_day"],
        status=AppointmentStatus(record["status"]),
        owner_id=str(record["owner_id"]) if record["owner_id"] else None,
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _attendees_payload(appointment: Appointment) -> list:
    return [a.model_dump() for a in appointment.attendees]


class PostgresAppointmentStore(AppointmentStore):
    async def list_unsynced(self, tenant_id: str, calendar_id: str) -> List[Appointment]:
        records = await db.fetch(
            """
            SELECT * FROM appointments
            WHERE tenant_id = $1
              AND calendar_id = $2
              AND external_id IS NULL
              AND status <> 'cancelled'
            ORDER BY created_at ASC
            """,
            tenant_id,
            calendar_id,
        )
        return [appointment_from_record(r) for r in records]

    async def list_synced(
        self, tenant_id: str, calendar_id: str, limit: int = 100
    ) -> List[Appointment]:
        records = await db.fetch(
            """
            SELECT * FROM appointments
            WHERE tenant_id = $1
              AND calendar_id = $2
              AND external_id IS NOT NULL
              AND status <> 'cancelled'
            ORDER BY created_at DESC
            LIMIT $3
            """,
            tenant_id,
            calendar_id,
            limit,
        )
        logger.debug(f"Found {len(records)} synced appointments for tenant {tenant_id}")
        return [appointment_from_record(r) for r in records]

    async def get_by_external_id(
        self, tenant_id: str, external_id: str
    ) -> Optional[Appointment]:
        record = await db.fetchrow(
            "SELECT * FROM appointments WHERE tenant_id = $1 AND external_id = $2",
            tenant_id,
            external_id,
        )
        return appointment_from_record(record) if record else None

    async def attach_external_id(
        self, appointment_id: str, external_id: str, meeting_link: Optional[str] = None
    ) -> None:
        await db.execute(
            """
            UPDATE appointments
            SET external_id = $2,
                meeting_link = COALESCE($3, meeting_link),
                updated_at = NOW()
            WHERE id = $1
              AND (external_id IS NULL OR external_id = $2)
            """,
            appointment_id,
            external_id,
            meeting_link,
        )
        logger.debug(f"Appointment {appointment_id} linked to remote event {external_id}")

    async def cancel(self, appointment_id: str) -> bool:
        result = await db.execute(
            """
            UPDATE appointments
            SET status = 'cancelled',
                updated_at = NOW()
            WHERE id = $1 AND status <> 'cancelled'
            """,
            appointment_id,
        )
        return result == "UPDATE 1"

    async def resolve_owner(self, tenant_id: str) -> str:
        owner = await db.fetchval(
            """
            SELECT id FROM users
            WHERE tenant_id = $1 AND (is_owner OR is_admin)
            ORDER BY is_owner DESC, created_at ASC
            LIMIT 1
            """,
            tenant_id,
        )
        if owner is None:
            logger.warning(f"No admin found for tenant {tenant_id}, using system owner")
            return SYSTEM_OWNER_ID
        return str(owner)

    async def upsert(self, appointment: Appointment) -> Appointment:
        if not appointment.external_id:
            raise ValueError("upsert requires an external id")

        owner_id = appointment.owner_id or await self.resolve_owner(appointment.tenant_id)

        record = await db.fetchrow(
            """
            INSERT INTO appointments (
                id, tenant_id, calendar_id, external_id,
                start_time, end_time, title, description, location,
                attendees, meeting_link, all_day, status, owner_id, created_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9,
                $10::jsonb, $11, $12, $13, $14, COALESCE($15, NOW())
            )
            ON CONFLICT (tenant_id, external_id) DO UPDATE SET
                start_time = EXCLUDED.start_time,
                end_time = EXCLUDED.end_time,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                attendees = EXCLUDED.attendees,
                meeting_link = EXCLUDED.meeting_link,
                all_day = EXCLUDED.all_day,
                status = EXCLUDED.status,
                updated_at = NOW()
            RETURNING *
            """,
            appointment.id,
            appointment.tenant_id,
            appointment.calendar_id,
            appointment.external_id,
            appointment.start_time,
            appointment.end_time,
            appointment.title,
            appointment.description,
            appointment.location,
            _attendees_payload(appointment),
            appointment.meeting_link,
            appointment.all_day,
            appointment.status.value,
            owner_id,
            appointment.created_at,
        )
        logger.debug(f"Upserted appointment {record['id']}")
        return appointment_from_record(record)
