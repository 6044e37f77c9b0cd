"""Cluster client interface used by the controller.

The controller never talks to a specific transport. All reads and writes go
through this interface so the reconciliation engine can be exercised against
an in-process cluster as well as a real API server.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TYPE_CHECKING

from flux_kcl.manifest import NamedResource


class WatchEventType(StrEnum):
    """Type of change observed on a watched object."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change to an object in the cluster."""

    type: WatchEventType
    resource_id: NamedResource
    obj: dict[str, Any]


class EventType(StrEnum):
    """Severity of a recorded kubernetes event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ClusterEvent:
    """A kubernetes event recorded against an object."""

    involved_object: NamedResource
    type: EventType
    reason: str
    message: str
    reporting_controller: str
    count: int = 1
    annotations: dict[str, str] = field(default_factory=dict)


class ClusterClient(ABC):
    """Abstract interface for authenticated access to a cluster."""

    @abstractmethod
    async def get(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist.

        With `api_version` set, an object of another API group counts as
        absent.
        """

    @abstractmethod
    async def list_resources(
        self, kind: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """List live objects of a kind, optionally limited to a namespace."""

    @abstractmethod
    async def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = False
    ) -> dict[str, Any]:
        """Server-side apply an object owned by `field_manager`.

        Applying identical content is not a write. Raises ConflictError when a
        field is owned by a different manager with a different value and
        `force` is not set.
        """

    @abstractmethod
    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        """Delete an object.

        Returns False when the object was already absent, or served in a
        different API group than `api_version`. Objects carrying
        finalizers are only marked for deletion.
        """

    @abstractmethod
    async def update_status(
        self, resource_id: NamedResource, status: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the status of an object in a single write.

        Raises ObjectNotFoundError if the object does not exist.
        """

    @abstractmethod
    async def set_finalizers(
        self, resource_id: NamedResource, finalizers: list[str]
    ) -> dict[str, Any] | None:
        """Replace the finalizers of an object.

        Returns None if clearing the finalizers completed a pending deletion.
        Raises ObjectNotFoundError if the object does not exist.
        """

    @abstractmethod
    async def record_event(
        self,
        resource_id: NamedResource,
        event_type: EventType,
        reason: str,
        message: str,
        reporting_controller: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        """Record a kubernetes event against an object."""

    @abstractmethod
    async def watch(
        self, kinds: Iterable[str]
    ) -> AsyncGenerator[WatchEvent, None]:
        """Watch objects of the given kinds.

        Existing objects are replayed as ADDED events before changes are
        streamed.
        """
        if TYPE_CHECKING:
            yield None  # type: ignore[misc]
