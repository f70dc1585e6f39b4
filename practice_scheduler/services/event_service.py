"""Domain events for audit logging and notification collaborators."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from uuid import UUID

import structlog
from pydantic import BaseModel

from practice_scheduler.schemas.appointments import AppointmentStatus

logger = structlog.get_logger()


class AppointmentEvent(BaseModel):
    """A successful change to an appointment."""

    kind: str
    appointment_id: UUID
    actor_id: UUID | None
    before_status: AppointmentStatus | None
    after_status: AppointmentStatus
    occurred_at: datetime


EventHandler = Callable[[AppointmentEvent], Awaitable[None]]


class EventPublisher:
    """Fan-out of appointment events to subscribers.

    Handlers run on background tasks: ``publish`` returns immediately and a
    failing handler is logged without affecting the operation that emitted
    the event.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, handler: EventHandler) -> None:
        """Register *handler* for every future event."""
        self._handlers.append(handler)

    def publish(self, event: AppointmentEvent) -> None:
        """Dispatch *event* to all subscribers without waiting for them."""
        logger.info(
            "appointment_event",
            kind=event.kind,
            appointment_id=str(event.appointment_id),
            before_status=event.before_status.value if event.before_status else None,
            after_status=event.after_status.value,
        )
        for handler in self._handlers:
            task = asyncio.create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, e.g. on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, handler: EventHandler, event: AppointmentEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.warning(
                "event_handler_failed",
                kind=event.kind,
                appointment_id=str(event.appointment_id),
                error=str(e),
            )


# Global publisher instance
_publisher: EventPublisher | None = None


def get_event_publisher() -> EventPublisher:
    """Get or create the process-wide event publisher."""
    global _publisher

    if _publisher is None:
        _publisher = EventPublisher()

    return _publisher
