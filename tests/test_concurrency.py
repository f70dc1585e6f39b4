"""Concurrent booking tests.

These run many operations on one event loop at once; the in-memory
repository yields on every call, so the operations interleave the way
concurrent requests against a database would. The SQL case gives every
request its own session and connection, as separate API requests get.
"""

import asyncio
import random
from datetime import timedelta

import pytest

from practice_scheduler.core.exceptions import (
    ConflictException,
    InvalidTransitionException,
    VersionConflictException,
)
from practice_scheduler.core.locks import InMemoryLockManager
from practice_scheduler.repositories.appointment_repository import (
    InMemoryAppointmentRepository,
    SQLAppointmentRepository,
)
from practice_scheduler.schemas.appointments import AppointmentFilters, AppointmentStatus
from practice_scheduler.services.booking_service import BookingService
from tests.conftest import ACTOR_ID, NOW

TOMORROW_10 = NOW + timedelta(days=1, hours=2)


class FlakyRepository(InMemoryAppointmentRepository):
    """Reports a stale version for the first ``failures`` updates."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.update_calls = 0

    async def update(self, appointment_id, expected_version, patch):
        self.update_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise VersionConflictException()
        return await super().update(appointment_id, expected_version, patch)


def assert_no_overlaps(appointments, attribute: str) -> None:
    by_resource: dict = {}
    for appointment in appointments:
        key = getattr(appointment, attribute)
        if key is not None:
            by_resource.setdefault(key, []).append(appointment)

    for booked in by_resource.values():
        booked.sort(key=lambda a: a.start_at)
        for earlier, later in zip(booked, booked[1:]):
            assert earlier.end_at <= later.start_at, f"{attribute} double-booked"


@pytest.mark.asyncio
async def test_same_slot_is_booked_exactly_once(booking_service, appointment_data, resources):
    """Ten simultaneous requests for one slot: one wins, nine conflict."""
    requests = [appointment_data(patient_id=resources["patient"]) for _ in range(10)]

    results = await asyncio.gather(
        *(booking_service.create_appointment(r) for r in requests),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(created) == 1
    assert len(failures) == 9
    assert all(isinstance(f, ConflictException) for f in failures)


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [7, 42, 2024])
async def test_random_concurrent_bookings_never_overlap(
    booking_service, appointment_data, resources, repository, seed
):
    rng = random.Random(seed)
    professionals = [resources["professional"], resources["other_professional"]]
    rooms = [resources["room"], resources["other_room"], None]
    patients = [resources["patient"], resources["other_patient"]]

    requests = [
        appointment_data(
            start_at=TOMORROW_10 + timedelta(minutes=15 * rng.randint(0, 24)),
            minutes=rng.choice([15, 30, 45, 60, 90]),
            professional_id=rng.choice(professionals),
            room_id=rng.choice(rooms),
            patient_id=rng.choice(patients),
        )
        for _ in range(40)
    ]

    results = await asyncio.gather(
        *(booking_service.create_appointment(r) for r in requests),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(e, ConflictException) for e in errors)
    assert len(errors) < len(requests)

    _, stored = await repository.list_appointments(AppointmentFilters(page_size=100))
    assert len(stored) == len(requests) - len(errors)
    assert_no_overlaps(stored, "professional_id")
    assert_no_overlaps(stored, "room_id")


@pytest.mark.asyncio
async def test_concurrent_reschedules_into_same_slot(
    booking_service, appointment_data, resources
):
    first = await booking_service.create_appointment(appointment_data())
    second = await booking_service.create_appointment(
        appointment_data(
            start_at=TOMORROW_10 + timedelta(hours=2),
            patient_id=resources["other_patient"],
        )
    )
    target = TOMORROW_10 + timedelta(hours=4)

    results = await asyncio.gather(
        booking_service.reschedule(
            first.id, target, target + timedelta(hours=1), ACTOR_ID, "Afternoon"
        ),
        booking_service.reschedule(
            second.id, target, target + timedelta(hours=1), ACTOR_ID, "Afternoon"
        ),
        return_exceptions=True,
    )

    moved = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(moved) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], ConflictException)
    assert moved[0].start_at == target


@pytest.mark.asyncio
async def test_concurrent_confirm_and_cancel_stay_consistent(
    booking_service, appointment_data, repository
):
    """Interleaved writes are serialized by the version check and retried."""
    appointment = await booking_service.create_appointment(
        appointment_data(source="public_booking")
    )

    results = await asyncio.gather(
        booking_service.confirm(appointment.id, ACTOR_ID),
        booking_service.cancel(appointment.id, ACTOR_ID, "Found another slot"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, InvalidTransitionException)

    final = await repository.get(appointment.id)
    assert final.version == 1 + len(succeeded)
    assert final.status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_stale_version_is_retried(directory, clock, scheduler_settings, appointment_data):
    repository = FlakyRepository(failures=0)
    service = BookingService(repository, directory, clock=clock, config=scheduler_settings)
    appointment = await service.create_appointment(appointment_data(source="public_booking"))

    repository.failures = 2
    confirmed = await service.confirm(appointment.id)

    assert confirmed.status == AppointmentStatus.CONFIRMED
    assert confirmed.version == 2
    assert repository.update_calls == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(directory, clock, scheduler_settings, appointment_data):
    repository = FlakyRepository(failures=0)
    service = BookingService(repository, directory, clock=clock, config=scheduler_settings)
    appointment = await service.create_appointment(appointment_data(source="public_booking"))

    repository.failures = 10
    with pytest.raises(VersionConflictException):
        await service.confirm(appointment.id)

    assert repository.update_calls == scheduler_settings.version_retry_attempts
    stored = await repository.get(appointment.id)
    assert stored.status == AppointmentStatus.PENDING


@pytest.mark.asyncio
async def test_overlapping_creates_over_sql_book_exactly_once(
    db_session_factory,
    directory,
    events,
    clock,
    scheduler_settings,
    appointment_data,
):
    """Eight requests for staggered, mutually overlapping windows on separate sessions."""
    locks = InMemoryLockManager(timeout=10.0)
    requests = [
        appointment_data(start_at=TOMORROW_10 + timedelta(minutes=5 * i)) for i in range(8)
    ]

    async def book(request):
        async with db_session_factory() as session:
            service = BookingService(
                repository=SQLAppointmentRepository(session),
                directory=directory,
                locks=locks,
                events=events,
                clock=clock,
                config=scheduler_settings,
            )
            return await service.create_appointment(request)

    results = await asyncio.gather(*(book(r) for r in requests), return_exceptions=True)

    created = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(created) == 1
    assert len(failures) == 7
    assert all(isinstance(f, ConflictException) for f in failures)

    async with db_session_factory() as session:
        total, stored = await SQLAppointmentRepository(session).list_appointments(
            AppointmentFilters()
        )
    assert total == 1
    assert stored[0].id == created[0].id
