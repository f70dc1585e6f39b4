"""Appointment persistence.

Two implementations share one async interface: ``SQLAppointmentRepository``
on top of SQLAlchemy Core, and ``InMemoryAppointmentRepository`` for
single-process use and tests. Both treat soft-deleted rows as absent and
guard every write with the record's version counter.
"""

import asyncio
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from practice_scheduler.core.exceptions import (
    ConflictException,
    NotFoundException,
    ValidationException,
    VersionConflictException,
)
from practice_scheduler.core.interval import Interval
from practice_scheduler.models.appointments import appointments
from practice_scheduler.schemas.appointments import (
    INACTIVE_STATUSES,
    Appointment,
    AppointmentFilters,
    AppointmentStatus,
    ResourceType,
)

_JSON_FIELDS = ("attendance", "cancellation", "rescheduling", "reminders")

_UPCOMING_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


class AppointmentRepository(Protocol):
    """Storage operations the scheduling core relies on."""

    async def get(self, appointment_id: UUID) -> Appointment | None:
        """Return the appointment, or None if missing or soft-deleted."""
        ...

    async def find_active_by_resource(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        window_hint: Interval | None = None,
    ) -> list[Appointment]:
        """Return active appointments holding the resource, optionally near a window."""
        ...

    async def insert(self, appointment: Appointment) -> UUID:
        """Store a new appointment; raise ConflictException on a duplicate slot."""
        ...

    async def update(
        self,
        appointment_id: UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> Appointment:
        """Apply *patch* if the stored version still equals *expected_version*."""
        ...

    async def list_appointments(self, filters: AppointmentFilters) -> tuple[int, list[Appointment]]:
        """Return the total count and one page of appointments."""
        ...

    async def list_upcoming(
        self,
        window: Interval,
        professional_id: UUID | None = None,
    ) -> list[Appointment]:
        """Return pending/confirmed appointments starting inside *window*."""
        ...

    async def count_by_status(self, filters: AppointmentFilters) -> dict[AppointmentStatus, int]:
        """Return the number of live appointments per status matching *filters*."""
        ...


def _resource_value(appointment: Appointment, resource_type: ResourceType) -> UUID | None:
    if resource_type == ResourceType.PROFESSIONAL:
        return appointment.professional_id
    if resource_type == ResourceType.ROOM:
        return appointment.room_id
    if resource_type == ResourceType.PATIENT:
        return appointment.patient_id
    raise ValidationException(f"Resource type '{resource_type.value}' has no schedule")


def _serialize(values: dict[str, Any]) -> dict[str, Any]:
    """Convert appointment field values into column values."""
    row: dict[str, Any] = {}
    for key, value in values.items():
        if key in _JSON_FIELDS:
            row[key] = value.model_dump(mode="json") if value is not None else None
        elif isinstance(value, Enum):
            row[key] = value.value
        else:
            row[key] = value
    return row


class SQLAppointmentRepository:
    """Repository for appointment database operations."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    @staticmethod
    def _resource_column(resource_type: ResourceType) -> Any:
        columns = {
            ResourceType.PROFESSIONAL: appointments.c.professional_id,
            ResourceType.ROOM: appointments.c.room_id,
            ResourceType.PATIENT: appointments.c.patient_id,
        }
        if resource_type not in columns:
            raise ValidationException(f"Resource type '{resource_type.value}' has no schedule")
        return columns[resource_type]

    @staticmethod
    def _to_appointment(row: Any) -> Appointment:
        return Appointment.model_validate(dict(row._mapping))

    async def get(self, appointment_id: UUID) -> Appointment | None:
        """Get a live appointment by ID."""
        stmt = select(appointments).where(
            and_(
                appointments.c.id == appointment_id,
                appointments.c.deleted_at.is_(None),
            )
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        return self._to_appointment(row) if row else None

    async def find_active_by_resource(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        window_hint: Interval | None = None,
    ) -> list[Appointment]:
        """
        Find appointments that currently hold a resource.

        Args:
            resource_type: Which participant column to match
            resource_id: Professional, room or patient ID
            window_hint: When given, only rows overlapping this window are read

        Returns:
            Active appointments ordered by start time
        """
        conditions = [
            self._resource_column(resource_type) == resource_id,
            appointments.c.status.notin_([s.value for s in INACTIVE_STATUSES]),
            appointments.c.deleted_at.is_(None),
        ]
        if window_hint is not None:
            conditions.append(appointments.c.start_at < window_hint.end)
            conditions.append(appointments.c.end_at > window_hint.start)

        stmt = select(appointments).where(and_(*conditions)).order_by(appointments.c.start_at)
        result = await self.db.execute(stmt)
        return [self._to_appointment(row) for row in result.fetchall()]

    async def insert(self, appointment: Appointment) -> UUID:
        """
        Insert a new appointment.

        Raises:
            ConflictException: If the professional already holds the exact slot
        """
        stmt = insert(appointments).values(**_serialize(dict(appointment)))
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("Professional is not available at the selected time")
        return appointment.id

    async def update(
        self,
        appointment_id: UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> Appointment:
        """
        Apply a versioned update.

        Args:
            appointment_id: Appointment ID
            expected_version: Version the caller read before computing the patch
            patch: Field values to write

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found
            VersionConflictException: If the row changed since it was read
            ConflictException: If the new window duplicates an active slot
        """
        values = _serialize(patch)
        values["version"] = expected_version + 1

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.version == expected_version,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .values(**values)
            .returning(appointments)
        )
        try:
            result = await self.db.execute(stmt)
            row = result.fetchone()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("Professional is not available at the selected time")

        if row is None:
            await self.db.rollback()
            if await self.get(appointment_id) is None:
                raise NotFoundException("Appointment not found")
            raise VersionConflictException()

        await self.db.commit()
        return self._to_appointment(row)

    @staticmethod
    def _filter_conditions(filters: AppointmentFilters) -> list[Any]:
        conditions = [appointments.c.deleted_at.is_(None)]

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.professional_id:
            conditions.append(appointments.c.professional_id == filters.professional_id)

        if filters.room_id:
            conditions.append(appointments.c.room_id == filters.room_id)

        if filters.from_date:
            conditions.append(appointments.c.start_at >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.start_at <= filters.to_date)

        return conditions

    async def list_appointments(self, filters: AppointmentFilters) -> tuple[int, list[Appointment]]:
        """List appointments with filtering and pagination."""
        conditions = self._filter_conditions(filters)

        count_stmt = select(func.count()).select_from(appointments).where(and_(*conditions))
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        offset = (filters.page - 1) * filters.page_size
        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.start_at.desc())
            .limit(filters.page_size)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return total, [self._to_appointment(row) for row in result.fetchall()]

    async def count_by_status(self, filters: AppointmentFilters) -> dict[AppointmentStatus, int]:
        """Count live appointments per status in one grouped query."""
        stmt = (
            select(appointments.c.status, func.count())
            .where(and_(*self._filter_conditions(filters)))
            .group_by(appointments.c.status)
        )
        result = await self.db.execute(stmt)
        return {AppointmentStatus(status): count for status, count in result.fetchall()}

    async def list_upcoming(
        self,
        window: Interval,
        professional_id: UUID | None = None,
    ) -> list[Appointment]:
        """List pending and confirmed appointments starting inside *window*."""
        conditions = [
            appointments.c.start_at >= window.start,
            appointments.c.start_at <= window.end,
            appointments.c.status.in_([s.value for s in _UPCOMING_STATUSES]),
            appointments.c.deleted_at.is_(None),
        ]
        if professional_id:
            conditions.append(appointments.c.professional_id == professional_id)

        stmt = select(appointments).where(and_(*conditions)).order_by(appointments.c.start_at)
        result = await self.db.execute(stmt)
        return [self._to_appointment(row) for row in result.fetchall()]


class InMemoryAppointmentRepository:
    """Dictionary-backed repository with the same guarantees as the SQL one.

    Every method yields to the event loop once, the way a database round trip
    would, so concurrent callers interleave realistically.
    """

    def __init__(self) -> None:
        self._rows: dict[UUID, Appointment] = {}

    async def get(self, appointment_id: UUID) -> Appointment | None:
        await asyncio.sleep(0)
        row = self._rows.get(appointment_id)
        if row is None or row.deleted_at is not None:
            return None
        return row

    async def find_active_by_resource(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        window_hint: Interval | None = None,
    ) -> list[Appointment]:
        await asyncio.sleep(0)
        rows = [
            row
            for row in self._rows.values()
            if row.is_active and _resource_value(row, resource_type) == resource_id
        ]
        if window_hint is not None:
            rows = [row for row in rows if row.interval.overlaps(window_hint)]
        return sorted(rows, key=lambda row: row.start_at)

    async def insert(self, appointment: Appointment) -> UUID:
        await asyncio.sleep(0)
        if appointment.id in self._rows:
            raise ConflictException("Appointment already exists")
        self._check_unique_slot(appointment)
        self._rows[appointment.id] = appointment
        return appointment.id

    async def update(
        self,
        appointment_id: UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> Appointment:
        await asyncio.sleep(0)
        current = self._rows.get(appointment_id)
        if current is None or current.deleted_at is not None:
            raise NotFoundException("Appointment not found")
        if current.version != expected_version:
            raise VersionConflictException()

        updated = current.model_copy(update={**patch, "version": expected_version + 1})
        self._check_unique_slot(updated)
        self._rows[appointment_id] = updated
        return updated

    async def list_appointments(self, filters: AppointmentFilters) -> tuple[int, list[Appointment]]:
        await asyncio.sleep(0)
        rows = self._filter_rows(filters)
        rows.sort(key=lambda row: row.start_at, reverse=True)
        offset = (filters.page - 1) * filters.page_size
        return len(rows), rows[offset : offset + filters.page_size]

    async def count_by_status(self, filters: AppointmentFilters) -> dict[AppointmentStatus, int]:
        await asyncio.sleep(0)
        counts: dict[AppointmentStatus, int] = {}
        for row in self._filter_rows(filters):
            counts[row.status] = counts.get(row.status, 0) + 1
        return counts

    def _filter_rows(self, filters: AppointmentFilters) -> list[Appointment]:
        rows = [row for row in self._rows.values() if row.deleted_at is None]
        if filters.status:
            rows = [row for row in rows if row.status == filters.status]
        if filters.patient_id:
            rows = [row for row in rows if row.patient_id == filters.patient_id]
        if filters.professional_id:
            rows = [row for row in rows if row.professional_id == filters.professional_id]
        if filters.room_id:
            rows = [row for row in rows if row.room_id == filters.room_id]
        if filters.from_date:
            rows = [row for row in rows if row.start_at >= filters.from_date]
        if filters.to_date:
            rows = [row for row in rows if row.start_at <= filters.to_date]
        return rows

    async def list_upcoming(
        self,
        window: Interval,
        professional_id: UUID | None = None,
    ) -> list[Appointment]:
        await asyncio.sleep(0)
        rows = [
            row
            for row in self._rows.values()
            if row.deleted_at is None
            and row.status in _UPCOMING_STATUSES
            and window.start <= row.start_at <= window.end
            and (professional_id is None or row.professional_id == professional_id)
        ]
        return sorted(rows, key=lambda row: row.start_at)

    def _check_unique_slot(self, candidate: Appointment) -> None:
        # Mirrors uq_appointments_professional_slot.
        if not candidate.is_active:
            return
        for row in self._rows.values():
            if (
                row.id != candidate.id
                and row.is_active
                and row.professional_id == candidate.professional_id
                and row.start_at == candidate.start_at
                and row.end_at == candidate.end_at
            ):
                raise ConflictException("Professional is not available at the selected time")
