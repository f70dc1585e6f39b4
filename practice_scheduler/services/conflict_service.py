"""Double-booking detection."""

from uuid import UUID

import structlog

from practice_scheduler.core.interval import Interval
from practice_scheduler.repositories.appointment_repository import AppointmentRepository
from practice_scheduler.schemas.appointments import Appointment, Conflict, ResourceType

logger = structlog.get_logger()


class ConflictService:
    """Finds active bookings that overlap a proposed window."""

    def __init__(self, repository: AppointmentRepository):
        """Initialize service with an appointment repository."""
        self.repository = repository

    async def find_conflicts(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        interval: Interval,
        exclude_appointment_id: UUID | None = None,
    ) -> list[Appointment]:
        """
        Find active appointments of one resource overlapping *interval*.

        Cancelled, no-show and soft-deleted appointments never collide, and
        back-to-back slots (one ends exactly when the other starts) are not
        conflicts.

        Args:
            resource_type: Professional, room or patient
            resource_id: ID of the resource
            interval: Proposed window
            exclude_appointment_id: Appointment to ignore, e.g. the one being moved

        Returns:
            Colliding appointments, ordered by start time
        """
        candidates = await self.repository.find_active_by_resource(
            resource_type, resource_id, window_hint=interval
        )
        return [
            appointment
            for appointment in candidates
            if appointment.id != exclude_appointment_id
            and appointment.is_active
            and appointment.interval.overlaps(interval)
        ]

    async def find_booking_conflicts(
        self,
        professional_id: UUID,
        room_id: UUID | None,
        interval: Interval,
        exclude_appointment_id: UUID | None = None,
        patient_id: UUID | None = None,
    ) -> list[Conflict]:
        """
        Check every resource a booking holds, each against its own schedule.

        Args:
            professional_id: Professional to check
            room_id: Room to check, if one is assigned
            interval: Proposed window
            exclude_appointment_id: Appointment to ignore
            patient_id: Patient to check, only passed when patient overlap is enforced

        Returns:
            Collisions tagged with the resource they were found on
        """
        resources: list[tuple[ResourceType, UUID]] = [(ResourceType.PROFESSIONAL, professional_id)]
        if room_id is not None:
            resources.append((ResourceType.ROOM, room_id))
        if patient_id is not None:
            resources.append((ResourceType.PATIENT, patient_id))

        conflicts: list[Conflict] = []
        for resource_type, resource_id in resources:
            for appointment in await self.find_conflicts(
                resource_type, resource_id, interval, exclude_appointment_id
            ):
                conflicts.append(Conflict.from_appointment(resource_type, resource_id, appointment))

        if conflicts:
            logger.info(
                "booking_conflict_detected",
                professional_id=str(professional_id),
                room_id=str(room_id) if room_id else None,
                window=interval.as_dict(),
                conflicts=len(conflicts),
            )
        return conflicts
