"""Appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    Uuid,
    func,
    text,
)

# Metadata for all tables
metadata = MetaData()

_ACTIVE_ROW = text("status NOT IN ('cancelled', 'no_show') AND deleted_at IS NULL")

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Participants
    Column("patient_id", Uuid, nullable=False, index=True),
    Column("professional_id", Uuid, nullable=False, index=True),
    Column("service_id", Uuid, nullable=False, index=True),
    Column("room_id", Uuid, nullable=True, index=True),
    # Time window, always UTC
    Column("start_at", DateTime(timezone=True), nullable=False),
    Column("end_at", DateTime(timezone=True), nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("timezone", Text, nullable=False, server_default="Europe/Madrid"),
    # Status management
    Column("status", Text, nullable=False, server_default="pending"),
    Column("source", Text, nullable=False, server_default="admin"),
    Column("booking_method", Text, nullable=False, server_default="online"),
    Column("notes", Text, nullable=True),
    # Nested records
    Column("attendance", JSON, nullable=False),
    Column("cancellation", JSON, nullable=True),
    Column("rescheduling", JSON, nullable=True),
    Column("reminders", JSON, nullable=False),
    # Optimistic concurrency
    Column("version", Integer, nullable=False, server_default="1"),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Soft delete (healthcare compliance)
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    # Constraints
    CheckConstraint("end_at > start_at", name="appointments_window_check"),
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'in_progress', 'completed', "
        "'cancelled', 'no_show', 'rescheduled')",
        name="appointments_status_check",
    ),
    Index("ix_appointments_professional_window", "professional_id", "start_at", "end_at"),
    Index("ix_appointments_room_window", "room_id", "start_at", "end_at"),
    # Last line of defence against double booking of the exact same slot.
    Index(
        "uq_appointments_professional_slot",
        "professional_id",
        "start_at",
        "end_at",
        unique=True,
        postgresql_where=_ACTIVE_ROW,
        sqlite_where=_ACTIVE_ROW,
    ),
)
