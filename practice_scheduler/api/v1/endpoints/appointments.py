"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from practice_scheduler.dependencies import ActorId, BookingServiceDep
from practice_scheduler.schemas.appointments import (
    Appointment,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentStats,
    AppointmentStatus,
    CancelRequest,
    ConflictListResponse,
    ConflictQuery,
    EligibilityResponse,
    ReminderSentRequest,
    RescheduleRequest,
)

router = APIRouter()


@router.post(
    "/",
    response_model=Appointment,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Create new appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """
    Book a new appointment.

    Args:
        data: Appointment creation data
        actor_id: Acting user
        service: Booking service

    Returns:
        Created appointment
    """
    return await service.create_appointment(data, actor_id)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    service: BookingServiceDep,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    patient_id: UUID | None = Query(None),
    professional_id: UUID | None = Query(None),
    room_id: UUID | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments with filtering.

    Args:
        service: Booking service
        status_filter: Filter by status
        patient_id: Filter by patient ID
        professional_id: Filter by professional ID
        room_id: Filter by room ID
        from_date: Filter by start date
        to_date: Filter by end date
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        patient_id=patient_id,
        professional_id=professional_id,
        room_id=room_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return await service.list_appointments(filters)


@router.get(
    "/upcoming",
    response_model=list[Appointment],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List upcoming appointments",
)
async def list_upcoming(
    service: BookingServiceDep,
    hours: int = Query(24, ge=1, le=24 * 14),
    professional_id: UUID | None = Query(None),
) -> list[Appointment]:
    """Pending and confirmed appointments starting within the next hours."""
    return await service.list_upcoming(hours, professional_id)


@router.get(
    "/stats",
    response_model=AppointmentStats,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment statistics",
)
async def get_statistics(
    service: BookingServiceDep,
    professional_id: UUID | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
) -> AppointmentStats:
    """
    Count appointments per status.

    Args:
        service: Booking service
        professional_id: Filter by professional ID
        from_date: Filter by start date
        to_date: Filter by end date

    Returns:
        Totals per status
    """
    return await service.get_statistics(professional_id, from_date, to_date)


@router.post(
    "/conflicts",
    response_model=ConflictListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Check resource availability",
)
async def check_conflicts(
    query: ConflictQuery,
    service: BookingServiceDep,
) -> ConflictListResponse:
    """
    Report bookings that would collide with a proposed window.

    Args:
        query: Resource and window to check
        service: Booking service

    Returns:
        Availability flag and colliding bookings
    """
    conflicts = await service.find_conflicts(
        query.resource_type,
        query.resource_id,
        query.start_at,
        query.end_at,
        query.exclude_appointment_id,
    )
    return ConflictListResponse(available=not conflicts, conflicts=conflicts)


@router.get(
    "/{appointment_id}",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    service: BookingServiceDep,
) -> Appointment:
    """
    Get a specific appointment by ID.

    Raises:
        NotFoundException: If appointment not found
    """
    return await service.get_appointment(appointment_id)


@router.get(
    "/{appointment_id}/eligibility",
    response_model=EligibilityResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Check cancel and reschedule eligibility",
)
async def get_eligibility(
    appointment_id: UUID,
    service: BookingServiceDep,
) -> EligibilityResponse:
    """Whether the appointment can still be cancelled or rescheduled."""
    return EligibilityResponse(
        appointment_id=appointment_id,
        can_be_cancelled=await service.can_be_cancelled(appointment_id),
        can_be_rescheduled=await service.can_be_rescheduled(appointment_id),
    )


@router.post(
    "/{appointment_id}/confirm",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Confirm appointment",
)
async def confirm_appointment(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """Confirm a pending appointment."""
    return await service.confirm(appointment_id, actor_id)


@router.post(
    "/{appointment_id}/cancel",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    data: CancelRequest,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """
    Cancel an appointment.

    Args:
        appointment_id: Appointment ID
        data: Cancellation reason and optional refund
        actor_id: Acting user
        service: Booking service

    Returns:
        Cancelled appointment
    """
    return await service.cancel(appointment_id, actor_id, data.reason, data.refund_amount)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: RescheduleRequest,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """
    Move an appointment to a new window.

    Args:
        appointment_id: Appointment ID
        data: New window and reason
        actor_id: Acting user
        service: Booking service

    Returns:
        Rescheduled appointment
    """
    return await service.reschedule(
        appointment_id, data.start_at, data.end_at, actor_id, data.reason
    )


@router.post(
    "/{appointment_id}/arrive",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Mark patient arrived",
)
async def mark_arrived(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """Record the patient's arrival."""
    return await service.mark_arrived(appointment_id, actor_id)


@router.post(
    "/{appointment_id}/start",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Start session",
)
async def start_session(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    return await service.start_session(appointment_id, actor_id)


@router.post(
    "/{appointment_id}/end",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="End session",
)
async def end_session(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    return await service.end_session(appointment_id, actor_id)


@router.post(
    "/{appointment_id}/no-show",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Mark no-show",
)
async def mark_no_show(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> Appointment:
    """Mark an appointment whose patient never arrived."""
    return await service.mark_no_show(appointment_id, actor_id)


@router.post(
    "/{appointment_id}/reminders",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Record reminder delivery",
)
async def record_reminder_sent(
    appointment_id: UUID,
    data: ReminderSentRequest,
    service: BookingServiceDep,
) -> Appointment:
    """Mark a reminder channel as sent."""
    return await service.record_reminder_sent(appointment_id, data.channel, data.sent_at)


@router.delete(
    "/{appointment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Appointments"],
    summary="Delete appointment",
)
async def delete_appointment(
    appointment_id: UUID,
    actor_id: ActorId,
    service: BookingServiceDep,
) -> None:
    """
    Soft delete an appointment.

    Args:
        appointment_id: Appointment ID
        actor_id: Acting user
        service: Booking service
    """
    await service.delete_appointment(appointment_id, actor_id)
