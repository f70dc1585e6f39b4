"""Lookups against the patient/professional/service/room catalogs.

The catalogs themselves are owned by other services; the booking core only
needs to know whether an ID exists and how long a service takes by default.
"""

from typing import Protocol
from uuid import UUID

from practice_scheduler.schemas.appointments import ResourceType


class ResourceDirectory(Protocol):
    """Existence checks for the resources an appointment references."""

    async def exists(self, resource_type: ResourceType, resource_id: UUID) -> bool:
        """Return True if the resource exists and is active."""
        ...

    async def service_duration(self, service_id: UUID) -> int | None:
        """Default duration of a service in minutes, if known."""
        ...


class StaticResourceDirectory:
    """Directory backed by explicitly registered IDs."""

    def __init__(self) -> None:
        self._resources: dict[ResourceType, set[UUID]] = {rt: set() for rt in ResourceType}
        self._durations: dict[UUID, int] = {}

    def register(self, resource_type: ResourceType, resource_id: UUID) -> UUID:
        """Make *resource_id* known under *resource_type*."""
        self._resources[resource_type].add(resource_id)
        return resource_id

    def register_service(self, service_id: UUID, duration_minutes: int | None = None) -> UUID:
        """Register a service and, optionally, its default duration."""
        self.register(ResourceType.SERVICE, service_id)
        if duration_minutes is not None:
            self._durations[service_id] = duration_minutes
        return service_id

    async def exists(self, resource_type: ResourceType, resource_id: UUID) -> bool:
        return resource_id in self._resources[resource_type]

    async def service_duration(self, service_id: UUID) -> int | None:
        return self._durations.get(service_id)


class PermissiveResourceDirectory:
    """Accepts every ID.

    For deployments where the catalog service validates references before
    requests reach the scheduler.
    """

    async def exists(self, resource_type: ResourceType, resource_id: UUID) -> bool:
        return True

    async def service_duration(self, service_id: UUID) -> int | None:
        return None
