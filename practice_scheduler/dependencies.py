"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from practice_scheduler.core.clock import SystemClock
from practice_scheduler.core.locks import get_lock_manager
from practice_scheduler.database import get_db
from practice_scheduler.repositories.appointment_repository import SQLAppointmentRepository
from practice_scheduler.services.booking_service import BookingService
from practice_scheduler.services.event_service import get_event_publisher
from practice_scheduler.services.resource_directory import PermissiveResourceDirectory


async def get_actor_id(
    x_actor_id: Annotated[str | None, Header(alias="X-Actor-Id")] = None,
) -> UUID:
    """
    Extract the acting user from the ``X-Actor-Id`` header.

    Authentication happens upstream; the gateway forwards the authenticated
    user ID in this header.

    Args:
        x_actor_id: Raw header value

    Returns:
        Actor user ID

    Raises:
        HTTPException: If the header is missing or not a UUID
    """
    if x_actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )

    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid actor ID format",
        )


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_booking_service(db: DatabaseSession) -> BookingService:
    """Build a booking service bound to the request's database session."""
    return BookingService(
        repository=SQLAppointmentRepository(db),
        directory=PermissiveResourceDirectory(),
        locks=get_lock_manager(),
        events=get_event_publisher(),
        clock=SystemClock(),
    )


# Type aliases for dependency injection
ActorId = Annotated[UUID, Depends(get_actor_id)]
BookingServiceDep = Annotated[BookingService, Depends(get_booking_service)]
