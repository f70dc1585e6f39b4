"""Appointment lifecycle rules.

All legal status edges live in ``TRANSITIONS``. Every operation here is pure:
it takes an appointment and the current time and returns a new appointment,
or raises without touching anything. Persistence and locking belong to the booking service.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from practice_scheduler.core.exceptions import (
    InvalidAttendanceOrderException,
    InvalidTransitionException,
    TooLateToCancelException,
    TooLateToRescheduleException,
    ValidationException,
)
from practice_scheduler.core.interval import Interval, minutes_half_up
from practice_scheduler.schemas.appointments import (
    Appointment,
    AppointmentStatus,
    Cancellation,
    RescheduleEntry,
    Rescheduling,
)
from practice_scheduler.services.reminder_service import reset_reminders


class AppointmentAction(str, Enum):
    """Operations that move an appointment through its lifecycle."""

    CONFIRM = "confirm"
    START_SESSION = "start_session"
    END_SESSION = "end_session"
    CANCEL = "cancel"
    MARK_NO_SHOW = "mark_no_show"
    RESCHEDULE = "reschedule"
    MARK_ARRIVED = "mark_arrived"


_OPEN = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})

# action -> (allowed source statuses, target status); None keeps the status.
TRANSITIONS: dict[AppointmentAction, tuple[frozenset[AppointmentStatus], AppointmentStatus | None]] = {
    AppointmentAction.CONFIRM: (frozenset({AppointmentStatus.PENDING}), AppointmentStatus.CONFIRMED),
    AppointmentAction.START_SESSION: (_OPEN, AppointmentStatus.IN_PROGRESS),
    AppointmentAction.END_SESSION: (
        frozenset({AppointmentStatus.IN_PROGRESS}),
        AppointmentStatus.COMPLETED,
    ),
    AppointmentAction.CANCEL: (_OPEN, AppointmentStatus.CANCELLED),
    AppointmentAction.MARK_NO_SHOW: (_OPEN, AppointmentStatus.NO_SHOW),
    AppointmentAction.RESCHEDULE: (_OPEN, None),
    AppointmentAction.MARK_ARRIVED: (_OPEN, None),
}


def target_status(action: AppointmentAction, current: AppointmentStatus) -> AppointmentStatus:
    """
    Resolve the status *action* leads to from *current*.

    Raises:
        InvalidTransitionException: If the edge is not in the table
    """
    sources, target = TRANSITIONS[action]
    if current not in sources:
        raise InvalidTransitionException(
            f"Cannot {action.value.replace('_', ' ')} an appointment that is {current.value}"
        )
    return target if target is not None else current


def hours_until_start(appointment: Appointment, now: datetime) -> float:
    """Hours between *now* and the appointment start (negative once started)."""
    return (appointment.start_at - now).total_seconds() / 3600


def _within_lead_time(appointment: Appointment, now: datetime, min_lead_time_hours: float) -> bool:
    return hours_until_start(appointment, now) >= min_lead_time_hours


def can_be_cancelled(appointment: Appointment, now: datetime, min_lead_time_hours: float) -> bool:
    """Open appointments can be cancelled until the minimum lead time."""
    return appointment.status in _OPEN and _within_lead_time(appointment, now, min_lead_time_hours)


def can_be_rescheduled(appointment: Appointment, now: datetime, min_lead_time_hours: float) -> bool:
    """Open appointments can be moved until the minimum lead time."""
    return appointment.status in _OPEN and _within_lead_time(appointment, now, min_lead_time_hours)


def _apply(action: AppointmentAction, appointment: Appointment, now: datetime, **changes) -> Appointment:
    status = target_status(action, appointment.status)
    return appointment.model_copy(update={**changes, "status": status, "updated_at": now})


def confirm(appointment: Appointment, now: datetime) -> Appointment:
    """pending -> confirmed."""
    return _apply(AppointmentAction.CONFIRM, appointment, now)


def mark_arrived(appointment: Appointment, now: datetime) -> Appointment:
    """Record patient arrival; the status is unchanged."""
    target_status(AppointmentAction.MARK_ARRIVED, appointment.status)
    attendance = appointment.attendance
    if attendance.patient_arrived:
        raise InvalidAttendanceOrderException("Patient is already marked as arrived")
    if attendance.session_started:
        raise InvalidAttendanceOrderException("Session has already started")

    attendance = attendance.model_copy(update={"patient_arrived": True, "patient_arrived_at": now})
    return _apply(AppointmentAction.MARK_ARRIVED, appointment, now, attendance=attendance)


def start_session(appointment: Appointment, now: datetime) -> Appointment:
    """pending|confirmed -> in_progress."""
    target_status(AppointmentAction.START_SESSION, appointment.status)
    attendance = appointment.attendance
    if attendance.patient_arrived_at and now < attendance.patient_arrived_at:
        raise InvalidAttendanceOrderException("Session cannot start before the patient arrived")

    attendance = attendance.model_copy(
        update={
            "session_started": True,
            "session_started_at": now,
            "professional_present": True,
        }
    )
    return _apply(AppointmentAction.START_SESSION, appointment, now, attendance=attendance)


def end_session(appointment: Appointment, now: datetime) -> Appointment:
    """in_progress -> completed, recording the actual session length."""
    attendance = appointment.attendance
    if not attendance.session_started or attendance.session_started_at is None:
        raise InvalidAttendanceOrderException("Session has not started")
    if now < attendance.session_started_at:
        raise InvalidAttendanceOrderException("Session cannot end before it started")

    actual = minutes_half_up(now - attendance.session_started_at)
    attendance = attendance.model_copy(
        update={
            "session_ended": True,
            "session_ended_at": now,
            "actual_duration_minutes": actual,
        }
    )
    return _apply(AppointmentAction.END_SESSION, appointment, now, attendance=attendance)


def cancel(
    appointment: Appointment,
    now: datetime,
    actor_id: UUID,
    reason: str,
    min_lead_time_hours: float,
    refund_amount: Decimal | None = None,
) -> Appointment:
    """pending|confirmed -> cancelled, while the lead time allows it."""
    target_status(AppointmentAction.CANCEL, appointment.status)
    if not reason or not reason.strip():
        raise ValidationException("A cancellation reason is required")
    if not _within_lead_time(appointment, now, min_lead_time_hours):
        raise TooLateToCancelException(
            f"Appointments can only be cancelled at least {min_lead_time_hours:g} hours in advance"
        )

    cancellation = Cancellation(
        cancelled_by=actor_id,
        cancelled_at=now,
        reason=reason.strip(),
        refund_amount=refund_amount,
    )
    return _apply(AppointmentAction.CANCEL, appointment, now, cancellation=cancellation)


def mark_no_show(appointment: Appointment, now: datetime) -> Appointment:
    """pending|confirmed -> no_show, once the start passed without arrival."""
    target_status(AppointmentAction.MARK_NO_SHOW, appointment.status)
    if now < appointment.start_at:
        raise InvalidTransitionException("Cannot mark a no-show before the appointment starts")
    if appointment.attendance.patient_arrived:
        raise InvalidTransitionException("Patient has arrived; cannot mark a no-show")
    return _apply(AppointmentAction.MARK_NO_SHOW, appointment, now)


def check_reschedulable(appointment: Appointment, now: datetime, min_lead_time_hours: float) -> None:
    """
    Validate the status edge and the lead time against the current start.

    Raises:
        InvalidTransitionException: If the appointment is not open
        TooLateToRescheduleException: If the current start is too close
    """
    target_status(AppointmentAction.RESCHEDULE, appointment.status)
    if not _within_lead_time(appointment, now, min_lead_time_hours):
        raise TooLateToRescheduleException(
            f"Appointments can only be rescheduled at least {min_lead_time_hours:g} hours in advance"
        )


def reschedule(
    appointment: Appointment,
    now: datetime,
    new_window: Interval,
    actor_id: UUID,
    reason: str,
    min_lead_time_hours: float,
) -> Appointment:
    """Move the appointment window in place, keeping its status.

    The previous window is appended to the rescheduling history, the counter
    goes up by one and every reminder flag is cleared. Conflict checks for
    the new window are the caller's job.
    """
    check_reschedulable(appointment, now, min_lead_time_hours)

    entry = RescheduleEntry(
        previous_start_at=appointment.start_at,
        previous_end_at=appointment.end_at,
        new_start_at=new_window.start,
        new_end_at=new_window.end,
        rescheduled_by=actor_id,
        rescheduled_at=now,
        reason=reason,
    )
    previous = appointment.rescheduling
    rescheduling = Rescheduling(
        original_start_at=previous.original_start_at if previous else appointment.start_at,
        original_end_at=previous.original_end_at if previous else appointment.end_at,
        rescheduled_by=actor_id,
        rescheduled_at=now,
        reason=reason,
        rescheduling_count=(previous.rescheduling_count if previous else 0) + 1,
        history=[*(previous.history if previous else []), entry],
    )
    return _apply(
        AppointmentAction.RESCHEDULE,
        appointment,
        now,
        start_at=new_window.start,
        end_at=new_window.end,
        duration_minutes=new_window.duration_minutes(),
        rescheduling=rescheduling,
        reminders=reset_reminders(appointment.reminders),
    )
