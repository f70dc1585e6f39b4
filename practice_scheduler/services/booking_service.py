"""Booking orchestration: the entry point for every appointment change."""

import inspect
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import structlog

from practice_scheduler.config import Settings, settings
from practice_scheduler.core.clock import Clock, SystemClock
from practice_scheduler.core.exceptions import (
    ConflictException,
    InvalidIntervalException,
    NotFoundException,
    VersionConflictException,
)
from practice_scheduler.core.interval import Interval
from practice_scheduler.core.locks import InMemoryLockManager, ResourceKey, ResourceLockManager
from practice_scheduler.repositories.appointment_repository import AppointmentRepository
from practice_scheduler.schemas.appointments import (
    Appointment,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentStats,
    AppointmentStatus,
    Conflict,
    ReminderChannel,
    ResourceType,
)
from practice_scheduler.services import reminder_service, state_machine
from practice_scheduler.services.conflict_service import ConflictService
from practice_scheduler.services.event_service import AppointmentEvent, EventPublisher
from practice_scheduler.services.resource_directory import ResourceDirectory

logger = structlog.get_logger()

Change = Callable[[Appointment, datetime], Appointment | Awaitable[Appointment]]

_UNAVAILABLE = {
    ResourceType.PROFESSIONAL: "Professional is not available at the selected time",
    ResourceType.ROOM: "Room is not available at the selected time",
    ResourceType.PATIENT: "Patient already has an appointment at the selected time",
}


def _patch(before: Appointment, after: Appointment) -> dict[str, Any]:
    return {
        name: getattr(after, name)
        for name in Appointment.model_fields
        if getattr(after, name) != getattr(before, name)
    }


def _conflict_error(conflicts: list[Conflict]) -> ConflictException:
    return ConflictException(_UNAVAILABLE[conflicts[0].resource_type], conflicts=conflicts)


class BookingService:
    """Creates and moves appointments without ever double-booking a resource.

    Window-changing writes (create, reschedule) run the conflict check and
    the write inside the per-resource locks of the professional and room.
    Every write is a versioned update; a stale version is retried a bounded
    number of times before ``VersionConflictException`` reaches the caller.
    """

    def __init__(
        self,
        repository: AppointmentRepository,
        directory: ResourceDirectory,
        locks: ResourceLockManager | None = None,
        events: EventPublisher | None = None,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        """
        Initialize service.

        Args:
            repository: Appointment storage
            directory: Resource existence checks
            locks: Per-resource lock manager
            events: Domain event publisher
            clock: Time source
            config: Scheduling policy settings
        """
        self.config = config or settings
        self.repository = repository
        self.directory = directory
        self.conflicts = ConflictService(repository)
        self.locks = locks or InMemoryLockManager(timeout=self.config.lock_timeout_seconds)
        self.events = events or EventPublisher()
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: UUID) -> Appointment:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found or soft-deleted
        """
        appointment = await self.repository.get(appointment_id)
        if appointment is None:
            raise NotFoundException("Appointment not found")
        return appointment

    async def list_appointments(self, filters: AppointmentFilters) -> AppointmentListResponse:
        """List appointments with filtering and pagination."""
        total, items = await self.repository.list_appointments(filters)
        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )

    async def get_statistics(
        self,
        professional_id: UUID | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AppointmentStats:
        """
        Count appointments per status.

        Args:
            professional_id: Restrict to one professional
            from_date: Earliest start time counted
            to_date: Latest start time counted

        Returns:
            Totals per status, soft-deleted appointments excluded
        """
        filters = AppointmentFilters(
            professional_id=professional_id,
            from_date=from_date,
            to_date=to_date,
        )
        counts = await self.repository.count_by_status(filters)
        return AppointmentStats.from_counts(counts)

    async def list_upcoming(
        self,
        hours: int = 24,
        professional_id: UUID | None = None,
    ) -> list[Appointment]:
        """Pending and confirmed appointments starting within the next *hours*."""
        now = self.clock.now()
        window = Interval(start=now, end=now + timedelta(hours=hours))
        return await self.repository.list_upcoming(window, professional_id)

    async def find_conflicts(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        start_at: datetime,
        end_at: datetime,
        exclude_appointment_id: UUID | None = None,
    ) -> list[Conflict]:
        """Report active bookings of a resource overlapping ``[start_at, end_at)``."""
        window = Interval(start=start_at, end=end_at)
        found = await self.conflicts.find_conflicts(
            resource_type, resource_id, window, exclude_appointment_id
        )
        return [Conflict.from_appointment(resource_type, resource_id, a) for a in found]

    async def can_be_cancelled(self, appointment_id: UUID) -> bool:
        """Check whether the appointment may still be cancelled."""
        appointment = await self.get_appointment(appointment_id)
        return state_machine.can_be_cancelled(
            appointment, self.clock.now(), self.config.min_lead_time_hours
        )

    async def can_be_rescheduled(self, appointment_id: UUID) -> bool:
        """Check whether the appointment may still be moved."""
        appointment = await self.get_appointment(appointment_id)
        return state_machine.can_be_rescheduled(
            appointment, self.clock.now(), self.config.min_lead_time_hours
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        data: AppointmentCreate,
        actor_id: UUID | None = None,
    ) -> Appointment:
        """
        Book a new appointment.

        Args:
            data: Appointment creation data
            actor_id: User performing the booking

        Returns:
            Created appointment, pending or confirmed depending on its source

        Raises:
            NotFoundException: If a referenced resource does not exist
            InvalidIntervalException: If the window is empty, not whole minutes or outside the duration bounds
            ConflictException: If the professional or room is already booked
        """
        await self._check_resources(data)
        window = await self._resolve_window(data)
        self._check_duration_bounds(window)

        now = self.clock.now()
        status = (
            AppointmentStatus.CONFIRMED
            if data.source.value in self.config.auto_confirm_sources
            else AppointmentStatus.PENDING
        )
        appointment = Appointment(
            id=uuid4(),
            patient_id=data.patient_id,
            professional_id=data.professional_id,
            service_id=data.service_id,
            room_id=data.room_id,
            start_at=window.start,
            end_at=window.end,
            duration_minutes=window.duration_minutes(),
            timezone=data.timezone or self.config.default_timezone,
            status=status,
            source=data.source,
            booking_method=data.booking_method,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )

        async with self.locks.hold(self._lock_keys(appointment)):
            conflicts = await self.conflicts.find_booking_conflicts(
                appointment.professional_id,
                appointment.room_id,
                window,
                patient_id=self._patient_to_check(appointment),
            )
            if conflicts:
                raise _conflict_error(conflicts)
            await self.repository.insert(appointment)

        logger.info(
            "appointment_created",
            appointment_id=str(appointment.id),
            professional_id=str(appointment.professional_id),
            status=appointment.status.value,
            source=appointment.source.value,
            window=window.as_dict(),
        )
        self._publish("created", None, appointment, actor_id)
        return appointment

    async def reschedule(
        self,
        appointment_id: UUID,
        new_start: datetime,
        new_end: datetime,
        actor_id: UUID,
        reason: str,
    ) -> Appointment:
        """
        Move an appointment to a new window.

        Raises:
            InvalidIntervalException: If the new window is invalid
            InvalidTransitionException: If the appointment is not pending or confirmed
            TooLateToRescheduleException: If the current start is inside the lead time
            ConflictException: If the new window collides with another active booking
        """
        new_window = Interval(start=new_start, end=new_end)
        self._check_duration_bounds(new_window)

        current = await self.get_appointment(appointment_id)
        state_machine.check_reschedulable(
            current, self.clock.now(), self.config.min_lead_time_hours
        )

        async def move(appointment: Appointment, now: datetime) -> Appointment:
            state_machine.check_reschedulable(appointment, now, self.config.min_lead_time_hours)
            conflicts = await self.conflicts.find_booking_conflicts(
                appointment.professional_id,
                appointment.room_id,
                new_window,
                exclude_appointment_id=appointment.id,
                patient_id=self._patient_to_check(appointment),
            )
            if conflicts:
                raise _conflict_error(conflicts)
            return state_machine.reschedule(
                appointment,
                now,
                new_window,
                actor_id,
                reason,
                self.config.min_lead_time_hours,
            )

        async with self.locks.hold(self._lock_keys(current)):
            return await self._write(appointment_id, move, "rescheduled", actor_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def confirm(self, appointment_id: UUID, actor_id: UUID | None = None) -> Appointment:
        """Confirm a pending appointment."""
        return await self._write(appointment_id, state_machine.confirm, "confirmed", actor_id)

    async def cancel(
        self,
        appointment_id: UUID,
        actor_id: UUID,
        reason: str,
        refund_amount: Decimal | None = None,
    ) -> Appointment:
        """
        Cancel an appointment. The record is kept with its cancellation details.

        Raises:
            InvalidTransitionException: If the appointment is not pending or confirmed
            TooLateToCancelException: If the start is inside the lead time
        """

        def change(appointment: Appointment, now: datetime) -> Appointment:
            return state_machine.cancel(
                appointment,
                now,
                actor_id,
                reason,
                self.config.min_lead_time_hours,
                refund_amount,
            )

        return await self._write(appointment_id, change, "cancelled", actor_id)

    async def mark_arrived(self, appointment_id: UUID, actor_id: UUID | None = None) -> Appointment:
        """Record that the patient arrived."""
        return await self._write(appointment_id, state_machine.mark_arrived, "arrived", actor_id)

    async def start_session(self, appointment_id: UUID, actor_id: UUID | None = None) -> Appointment:
        """Start the session."""
        return await self._write(
            appointment_id, state_machine.start_session, "session_started", actor_id
        )

    async def end_session(self, appointment_id: UUID, actor_id: UUID | None = None) -> Appointment:
        """End the session and complete the appointment."""
        return await self._write(appointment_id, state_machine.end_session, "completed", actor_id)

    async def mark_no_show(self, appointment_id: UUID, actor_id: UUID | None = None) -> Appointment:
        """Mark an appointment whose start passed without the patient arriving."""
        return await self._write(appointment_id, state_machine.mark_no_show, "no_show", actor_id)

    async def delete_appointment(self, appointment_id: UUID, actor_id: UUID | None = None) -> None:
        """Soft delete: hide the appointment from queries and free its slot."""

        def change(appointment: Appointment, now: datetime) -> Appointment:
            return appointment.model_copy(update={"deleted_at": now, "updated_at": now})

        await self._write(appointment_id, change, "deleted", actor_id)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def record_reminder_sent(
        self,
        appointment_id: UUID,
        channel: ReminderChannel,
        sent_at: datetime | None = None,
    ) -> Appointment:
        """Mark a reminder channel as delivered."""

        def change(appointment: Appointment, now: datetime) -> Appointment:
            reminders = reminder_service.record_sent(appointment.reminders, channel, sent_at or now)
            return appointment.model_copy(update={"reminders": reminders, "updated_at": now})

        return await self._write(appointment_id, change)

    async def schedule_reminder(
        self,
        appointment_id: UUID,
        channel: ReminderChannel,
        scheduled_for: datetime,
    ) -> Appointment:
        """Set when a reminder should be delivered on *channel*."""

        def change(appointment: Appointment, now: datetime) -> Appointment:
            reminders = reminder_service.schedule(appointment.reminders, channel, scheduled_for)
            return appointment.model_copy(update={"reminders": reminders, "updated_at": now})

        return await self._write(appointment_id, change)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _write(
        self,
        appointment_id: UUID,
        change: Change,
        event_kind: str | None = None,
        actor_id: UUID | None = None,
    ) -> Appointment:
        attempts = self.config.version_retry_attempts
        for attempt in range(1, attempts + 1):
            current = await self.get_appointment(appointment_id)
            result = change(current, self.clock.now())
            updated = await result if inspect.isawaitable(result) else result

            try:
                saved = await self.repository.update(
                    appointment_id, current.version, _patch(current, updated)
                )
            except VersionConflictException:
                logger.warning(
                    "appointment_version_conflict_retry",
                    appointment_id=str(appointment_id),
                    attempt=attempt,
                    max_attempts=attempts,
                )
                if attempt == attempts:
                    raise
                continue

            if event_kind is not None:
                self._publish(event_kind, current, saved, actor_id)
            return saved

        raise VersionConflictException()

    async def _check_resources(self, data: AppointmentCreate) -> None:
        references = [
            (ResourceType.PATIENT, data.patient_id, "Patient"),
            (ResourceType.PROFESSIONAL, data.professional_id, "Professional"),
            (ResourceType.SERVICE, data.service_id, "Service"),
        ]
        if data.room_id is not None:
            references.append((ResourceType.ROOM, data.room_id, "Room"))

        for resource_type, resource_id, label in references:
            if not await self.directory.exists(resource_type, resource_id):
                raise NotFoundException(f"{label} not found or inactive")

    async def _resolve_window(self, data: AppointmentCreate) -> Interval:
        if data.end_at is not None:
            window = Interval(start=data.start_at, end=data.end_at)
            self._check_whole_minutes(window)
            if data.duration_minutes is not None and data.duration_minutes != window.duration_minutes():
                raise InvalidIntervalException(
                    f"Duration of {data.duration_minutes} minutes does not match "
                    f"the {window.duration_minutes()} minute window"
                )
            return window

        minutes = data.duration_minutes
        if minutes is None:
            minutes = await self.directory.service_duration(data.service_id)
        return Interval.from_duration(data.start_at, minutes or self.config.default_duration_minutes)

    @staticmethod
    def _check_whole_minutes(window: Interval) -> None:
        # duration_minutes must equal end - start exactly
        if not window.is_whole_minutes():
            raise InvalidIntervalException("Appointment window must be a whole number of minutes")

    def _check_duration_bounds(self, window: Interval) -> None:
        self._check_whole_minutes(window)
        minutes = window.duration_minutes()
        low, high = self.config.min_duration_minutes, self.config.max_duration_minutes
        if not low <= minutes <= high:
            raise InvalidIntervalException(
                f"Duration must be between {low} and {high} minutes, got {minutes}"
            )

    def _patient_to_check(self, appointment: Appointment) -> UUID | None:
        return appointment.patient_id if self.config.enforce_patient_overlap else None

    def _lock_keys(self, appointment: Appointment) -> list[ResourceKey]:
        keys: list[ResourceKey] = [(ResourceType.PROFESSIONAL.value, appointment.professional_id)]
        if appointment.room_id is not None:
            keys.append((ResourceType.ROOM.value, appointment.room_id))
        if self.config.enforce_patient_overlap:
            keys.append((ResourceType.PATIENT.value, appointment.patient_id))
        return keys

    def _publish(
        self,
        kind: str,
        before: Appointment | None,
        after: Appointment,
        actor_id: UUID | None,
    ) -> None:
        self.events.publish(
            AppointmentEvent(
                kind=kind,
                appointment_id=after.id,
                actor_id=actor_id,
                before_status=before.status if before else None,
                after_status=after.status,
                occurred_at=after.updated_at,
            )
        )
