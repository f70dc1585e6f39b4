"""Appointment schemas: the domain record plus request/response models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from practice_scheduler.core.interval import Interval, to_utc


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    # Reserved: reschedules keep the record's status, see DESIGN.md.
    RESCHEDULED = "rescheduled"


# Statuses that no longer hold their time slot.
INACTIVE_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class AppointmentSource(str, Enum):
    """How the booking was initiated."""

    ADMIN = "admin"
    PUBLIC_BOOKING = "public_booking"
    PROFESSIONAL = "professional"
    PATIENT_PORTAL = "patient_portal"


class BookingMethod(str, Enum):
    """Channel the booking request arrived through."""

    ONLINE = "online"
    PHONE = "phone"
    IN_PERSON = "in_person"
    EMAIL = "email"


class ResourceType(str, Enum):
    """Bookable resources whose schedules must not overlap."""

    PROFESSIONAL = "professional"
    ROOM = "room"
    PATIENT = "patient"
    SERVICE = "service"


class ReminderChannel(str, Enum):
    """Reminder delivery channels."""

    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


class Attendance(BaseModel):
    """Arrival and session timing of an appointment."""

    model_config = ConfigDict(frozen=True)

    patient_arrived: bool = False
    patient_arrived_at: datetime | None = None
    professional_present: bool = False
    session_started: bool = False
    session_started_at: datetime | None = None
    session_ended: bool = False
    session_ended_at: datetime | None = None
    actual_duration_minutes: int | None = Field(None, ge=0)


class Cancellation(BaseModel):
    """Who cancelled, when and why."""

    model_config = ConfigDict(frozen=True)

    cancelled_by: UUID
    cancelled_at: datetime
    reason: str = Field(..., min_length=1, max_length=500)
    refund_amount: Decimal | None = Field(None, ge=0)
    refund_processed: bool = False
    reschedule_offered: bool = True


class RescheduleEntry(BaseModel):
    """One move of the appointment window."""

    model_config = ConfigDict(frozen=True)

    previous_start_at: datetime
    previous_end_at: datetime
    new_start_at: datetime
    new_end_at: datetime
    rescheduled_by: UUID
    rescheduled_at: datetime
    reason: str


class Rescheduling(BaseModel):
    """Rescheduling summary, present once the appointment has been moved."""

    model_config = ConfigDict(frozen=True)

    original_start_at: datetime
    original_end_at: datetime
    rescheduled_by: UUID
    rescheduled_at: datetime
    reason: str
    rescheduling_count: int = Field(..., ge=1)
    history: list[RescheduleEntry] = Field(default_factory=list)


class ReminderState(BaseModel):
    """Delivery state of a single reminder channel."""

    model_config = ConfigDict(frozen=True)

    sent: bool = False
    sent_at: datetime | None = None
    scheduled_for: datetime | None = None


class Reminders(BaseModel):
    """Reminder state for every channel."""

    model_config = ConfigDict(frozen=True)

    sms: ReminderState = Field(default_factory=ReminderState)
    email: ReminderState = Field(default_factory=ReminderState)
    push: ReminderState = Field(default_factory=ReminderState)

    def get(self, channel: ReminderChannel) -> ReminderState:
        """Return the state of *channel*."""
        return getattr(self, channel.value)

    def any_sent(self) -> bool:
        """Check whether any channel is marked as sent."""
        return any(self.get(channel).sent for channel in ReminderChannel)


class Appointment(BaseModel):
    """An appointment record.

    Instances are immutable. Status, window, attendance and reminder changes
    are produced by the state machine as new instances and persisted through
    the repository with a version check.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    patient_id: UUID
    professional_id: UUID
    service_id: UUID
    room_id: UUID | None = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    timezone: str = "Europe/Madrid"
    status: AppointmentStatus = AppointmentStatus.PENDING
    source: AppointmentSource = AppointmentSource.ADMIN
    booking_method: BookingMethod = BookingMethod.ONLINE
    notes: str | None = Field(None, max_length=2000)
    attendance: Attendance = Field(default_factory=Attendance)
    cancellation: Cancellation | None = None
    rescheduling: Rescheduling | None = None
    reminders: Reminders = Field(default_factory=Reminders)
    version: int = Field(default=1, ge=1)
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @field_validator("start_at", "end_at", "created_at", "updated_at", "deleted_at")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        """Store timestamps in UTC."""
        return to_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_window(self) -> "Appointment":
        """End must be after start."""
        Interval(start=self.start_at, end=self.end_at)
        return self

    @property
    def interval(self) -> Interval:
        """The appointment window."""
        return Interval(start=self.start_at, end=self.end_at)

    @property
    def is_active(self) -> bool:
        """Whether the appointment still occupies its slot."""
        return self.deleted_at is None and self.status not in INACTIVE_STATUSES

    @property
    def rescheduling_count(self) -> int:
        """Number of times the appointment has been moved."""
        return self.rescheduling.rescheduling_count if self.rescheduling else 0


class AppointmentCreate(BaseModel):
    """Schema for creating a new appointment.

    ``end_at`` and ``duration_minutes`` are both optional; when neither is
    given the service's default duration is used.
    """

    patient_id: UUID
    professional_id: UUID
    service_id: UUID
    room_id: UUID | None = None
    start_at: datetime
    end_at: datetime | None = None
    duration_minutes: int | None = Field(None, gt=0)
    timezone: str | None = Field(None, max_length=64)
    source: AppointmentSource = AppointmentSource.ADMIN
    booking_method: BookingMethod = BookingMethod.ONLINE
    notes: str | None = Field(None, max_length=2000)


class CancelRequest(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str = Field(..., min_length=1, max_length=500)
    refund_amount: Decimal | None = Field(None, ge=0)


class RescheduleRequest(BaseModel):
    """Schema for moving an appointment to a new window."""

    start_at: datetime
    end_at: datetime
    reason: str = Field(..., min_length=1, max_length=500)


class ReminderSentRequest(BaseModel):
    """Schema for recording a delivered reminder."""

    channel: ReminderChannel
    sent_at: datetime | None = None


class ConflictQuery(BaseModel):
    """Schema for checking a resource's availability."""

    resource_type: ResourceType
    resource_id: UUID
    start_at: datetime
    end_at: datetime
    exclude_appointment_id: UUID | None = None


class Conflict(BaseModel):
    """An existing booking colliding with a proposed window."""

    resource_type: ResourceType
    resource_id: UUID
    appointment_id: UUID
    start_at: datetime
    end_at: datetime
    status: AppointmentStatus

    @classmethod
    def from_appointment(
        cls,
        resource_type: ResourceType,
        resource_id: UUID,
        appointment: Appointment,
    ) -> "Conflict":
        """Describe *appointment* as a collision on the given resource."""
        return cls(
            resource_type=resource_type,
            resource_id=resource_id,
            appointment_id=appointment.id,
            start_at=appointment.start_at,
            end_at=appointment.end_at,
            status=appointment.status,
        )


class ConflictListResponse(BaseModel):
    """Schema for conflict check response."""

    available: bool
    conflicts: list[Conflict]


class EligibilityResponse(BaseModel):
    """Schema for cancel/reschedule eligibility."""

    appointment_id: UUID
    can_be_cancelled: bool
    can_be_rescheduled: bool


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[Appointment]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    patient_id: UUID | None = None
    professional_id: UUID | None = None
    room_id: UUID | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AppointmentStats(BaseModel):
    """Schema for appointment counts per status."""

    total: int = 0
    pending: int = 0
    confirmed: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    no_show: int = 0
    rescheduled: int = 0

    @classmethod
    def from_counts(cls, counts: dict[AppointmentStatus, int]) -> "AppointmentStats":
        """Build stats from a status -> count mapping."""
        return cls(
            total=sum(counts.values()),
            **{status.value: counts.get(status, 0) for status in AppointmentStatus},
        )
