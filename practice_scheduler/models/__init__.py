"""Database models."""

from practice_scheduler.models.appointments import appointments, metadata

__all__ = [
    "appointments",
    "metadata",
]
