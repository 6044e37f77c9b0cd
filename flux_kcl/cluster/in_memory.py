"""Module for an in memory cluster.

The in memory cluster behaves like a small API server: it tracks generations,
resource versions, field ownership for server-side apply and finalizer gated
deletion. It is used by the local command line tool and in tests.
"""

import asyncio
import copy
import datetime
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable, Iterable
from typing import Any, DefaultDict

from flux_kcl.manifest import NamedResource, split_api_version
from flux_kcl.exceptions import ConflictError, InputException, ObjectNotFoundError

from .client import (
    ClusterClient,
    ClusterEvent,
    EventType,
    WatchEvent,
    WatchEventType,
)

__all__ = ["InMemoryClusterClient"]

_LOGGER = logging.getLogger(__name__)

FieldPath = tuple[str, ...]

# Metadata maintained by the server and never owned by a field manager
SERVER_METADATA = {
    "resourceVersion",
    "generation",
    "managedFields",
    "uid",
    "creationTimestamp",
    "deletionTimestamp",
}
IDENTITY_METADATA = {"name", "namespace"}


def _now() -> str:
    return datetime.datetime.now(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def resource_id_for(obj: dict[str, Any]) -> NamedResource:
    """Return the identity of a raw object."""
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    metadata = obj.get("metadata") or {}
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid object missing metadata.name: {obj}")
    return NamedResource(kind, metadata.get("namespace"), name)


def _same_group(obj: dict[str, Any], api_version: str | None) -> bool:
    """Return True if the object is served in the group of `api_version`."""
    if api_version is None:
        return True
    group, _ = split_api_version(obj.get("apiVersion") or "")
    return group == split_api_version(api_version)[0]


def _flatten(obj: dict[str, Any], prefix: FieldPath = ()) -> dict[FieldPath, Any]:
    """Flatten a nested mapping into leaf field paths."""
    result: dict[FieldPath, Any] = {}
    for key, value in obj.items():
        path = prefix + (key,)
        if isinstance(value, dict) and value:
            result.update(_flatten(value, path))
        else:
            result[path] = value
    return result


def _owned_fields(obj: dict[str, Any]) -> dict[FieldPath, Any]:
    """Return the leaf fields of an applied object that a manager owns."""
    content = {
        key: value
        for key, value in obj.items()
        if key not in ("apiVersion", "kind", "status", "metadata")
    }
    if metadata := {
        key: value
        for key, value in (obj.get("metadata") or {}).items()
        if key not in SERVER_METADATA and key not in IDENTITY_METADATA
    }:
        content["metadata"] = metadata
    return _flatten(content)


def _get_path(obj: dict[str, Any], path: FieldPath) -> Any:
    value: Any = obj
    for part in path:
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _set_path(obj: dict[str, Any], path: FieldPath, value: Any) -> None:
    inner = obj
    for part in path[:-1]:
        if not isinstance(inner.get(part), dict):
            inner[part] = {}
        inner = inner[part]
    inner[path[-1]] = copy.deepcopy(value)


def _remove_path(obj: dict[str, Any], path: FieldPath) -> None:
    parents: list[tuple[dict[str, Any], str]] = []
    inner = obj
    for part in path[:-1]:
        if not isinstance(inner.get(part), dict):
            return
        parents.append((inner, part))
        inner = inner[part]
    inner.pop(path[-1], None)
    # Drop parents left empty by the removal
    for parent, part in reversed(parents):
        if parent[part]:
            break
        del parent[part]


def _content(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the object without server maintained metadata."""
    result = {k: v for k, v in obj.items() if k != "metadata"}
    result["metadata"] = {
        k: v for k, v in (obj.get("metadata") or {}).items() if k not in SERVER_METADATA
    }
    return result


def _spec_content(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the fields whose change bumps the object generation."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


class InMemoryClusterClient(ClusterClient):
    """In-memory implementation of the ClusterClient interface.

    Objects are keyed by NamedResource, one object per kind, namespace and
    name whatever group it was applied with. Reads and deletes given an
    apiVersion only match an object applied in the same group. Watchers are
    notified through listener callbacks, and every effective mutation
    increments `write_count`.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryClusterClient."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._managed: DefaultDict[NamedResource, dict[str, set[FieldPath]]] = (
            defaultdict(dict)
        )
        self._listeners: list[Callable[[WatchEvent], None]] = []
        self._resource_version = 0
        self.events: list[ClusterEvent] = []
        self.write_count = 0

    def add_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create or replace an object, outside of server-side apply.

        When replacing an object, its status, finalizers and deletion state are
        kept unless the new document sets them.
        """
        resource_id = resource_id_for(obj)
        new_obj = copy.deepcopy(obj)
        new_obj.setdefault("metadata", {})
        existing = self._objects.get(resource_id)
        if existing is not None:
            metadata = new_obj["metadata"]
            for key in ("uid", "creationTimestamp", "deletionTimestamp", "finalizers"):
                if key not in metadata and key in existing["metadata"]:
                    metadata[key] = existing["metadata"][key]
            if "status" not in new_obj and "status" in existing:
                new_obj["status"] = copy.deepcopy(existing["status"])
            if _content(new_obj) == _content(existing):
                _LOGGER.debug("Object %s unchanged, skipping", resource_id)
                return copy.deepcopy(existing)
            generation = existing["metadata"].get("generation", 1)
            if _spec_content(new_obj) != _spec_content(existing):
                generation += 1
            new_obj["metadata"]["generation"] = generation
        else:
            new_obj["metadata"].setdefault("generation", 1)
        self._store(resource_id, new_obj, existing is None)
        return copy.deepcopy(new_obj)

    def get_object(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of an object without going through the async API."""
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    def list_objects(self, kind: str | None = None) -> list[dict[str, Any]]:
        """List copies of all objects, optionally filtered by kind."""
        return [
            copy.deepcopy(obj)
            for resource_id, obj in self._objects.items()
            if kind is None or resource_id.kind == kind
        ]

    def field_managers(self, resource_id: NamedResource) -> set[str]:
        """Return the names of the field managers of an object."""
        return {
            manager for manager, paths in self._managed[resource_id].items() if paths
        }

    async def get(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist."""
        if (obj := self.get_object(resource_id)) is None:
            return None
        if not _same_group(obj, api_version):
            _LOGGER.debug("Object %s is not served as %s", resource_id, api_version)
            return None
        return obj

    async def list_resources(
        self, kind: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """List live objects of a kind, optionally limited to a namespace."""
        return [
            copy.deepcopy(obj)
            for resource_id, obj in self._objects.items()
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
        ]

    async def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = False
    ) -> dict[str, Any]:
        """Server-side apply an object owned by `field_manager`."""
        resource_id = resource_id_for(obj)
        applied = _owned_fields(obj)
        existing = self._objects.get(resource_id)
        managed = self._managed[resource_id]

        if existing is not None:
            conflicts: list[str] = []
            for path, value in applied.items():
                for manager, paths in managed.items():
                    if manager == field_manager or path not in paths:
                        continue
                    if _get_path(existing, path) != value:
                        field_path = ".".join(path)
                        conflicts.append(f'conflict with "{manager}": .{field_path}')
            if conflicts and not force:
                raise ConflictError(
                    f"Apply failed for {resource_id} with {len(conflicts)} "
                    f"conflict(s): {', '.join(conflicts)}"
                )
            new_obj = copy.deepcopy(existing)
        else:
            new_obj = {
                "apiVersion": obj.get("apiVersion"),
                "kind": obj["kind"],
                "metadata": {
                    key: value
                    for key, value in obj["metadata"].items()
                    if key in IDENTITY_METADATA
                },
            }

        new_managed = {manager: set(paths) for manager, paths in managed.items()}
        previous = new_managed.get(field_manager, set())
        others: set[FieldPath] = set()
        for manager, paths in new_managed.items():
            if manager == field_manager:
                continue
            # Forcing takes ownership, equal values are shared
            if force:
                paths.difference_update(applied)
            others.update(paths)
        for path in previous - set(applied) - others:
            _remove_path(new_obj, path)
        for path, value in applied.items():
            _set_path(new_obj, path, value)
        new_obj["apiVersion"] = obj.get("apiVersion")
        new_managed[field_manager] = set(applied)

        if existing is not None and _content(new_obj) == _content(existing):
            self._managed[resource_id] = new_managed
            _LOGGER.debug("Apply of %s by %s unchanged", resource_id, field_manager)
            return copy.deepcopy(existing)

        if existing is not None:
            generation = existing["metadata"].get("generation", 1)
            if _spec_content(new_obj) != _spec_content(existing):
                generation += 1
            new_obj["metadata"]["generation"] = generation
        else:
            new_obj["metadata"]["generation"] = 1
        new_obj["metadata"]["managedFields"] = [
            {"manager": manager, "operation": "Apply"}
            for manager, paths in sorted(new_managed.items())
            if paths
        ]
        self._managed[resource_id] = new_managed
        self._store(resource_id, new_obj, existing is None)
        return copy.deepcopy(new_obj)

    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        """Delete an object, honoring finalizers."""
        existing = self._objects.get(resource_id)
        if existing is None or not _same_group(existing, api_version):
            _LOGGER.debug("Object %s already absent", resource_id)
            return False
        if existing["metadata"].get("finalizers"):
            if existing["metadata"].get("deletionTimestamp"):
                return True
            new_obj = copy.deepcopy(existing)
            new_obj["metadata"]["deletionTimestamp"] = _now()
            self._store(resource_id, new_obj, False)
            return True
        self._remove(resource_id)
        return True

    async def update_status(
        self, resource_id: NamedResource, status: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the status of an object in a single write."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        if existing.get("status") == status:
            return copy.deepcopy(existing)
        new_obj = copy.deepcopy(existing)
        new_obj["status"] = copy.deepcopy(status)
        self._store(resource_id, new_obj, False)
        return copy.deepcopy(new_obj)

    async def set_finalizers(
        self, resource_id: NamedResource, finalizers: list[str]
    ) -> dict[str, Any] | None:
        """Replace the finalizers of an object."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        if not finalizers and existing["metadata"].get("deletionTimestamp"):
            self._remove(resource_id)
            return None
        if existing["metadata"].get("finalizers", []) == finalizers:
            return copy.deepcopy(existing)
        new_obj = copy.deepcopy(existing)
        if finalizers:
            new_obj["metadata"]["finalizers"] = list(finalizers)
        else:
            new_obj["metadata"].pop("finalizers", None)
        self._store(resource_id, new_obj, False)
        return copy.deepcopy(new_obj)

    async def record_event(
        self,
        resource_id: NamedResource,
        event_type: EventType,
        reason: str,
        message: str,
        reporting_controller: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        """Record a kubernetes event, aggregating repeats of the last event."""
        _LOGGER.debug(
            "Event %s %s for %s: %s", event_type, reason, resource_id, message
        )
        if self.events:
            last = self.events[-1]
            if (
                last.involved_object == resource_id
                and last.type == event_type
                and last.reason == reason
                and last.message == message
            ):
                last.count += 1
                return
        self.events.append(
            ClusterEvent(
                involved_object=resource_id,
                type=event_type,
                reason=reason,
                message=message,
                reporting_controller=reporting_controller,
                annotations=dict(annotations or {}),
            )
        )

    async def watch(
        self, kinds: Iterable[str]
    ) -> AsyncGenerator[WatchEvent, None]:
        """Watch objects of the given kinds, replaying existing objects first."""
        kind_set = set(kinds)
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()

        def callback(event: WatchEvent) -> None:
            if event.resource_id.kind in kind_set:
                queue.put_nowait(event)

        # Register before replaying so no change is missed in between
        self._listeners.append(callback)
        try:
            for resource_id, obj in list(self._objects.items()):
                if resource_id.kind in kind_set:
                    yield WatchEvent(
                        WatchEventType.ADDED, resource_id, copy.deepcopy(obj)
                    )
            while True:
                event = await queue.get()
                yield event
                queue.task_done()
        except asyncio.CancelledError:
            _LOGGER.debug("Watch for kinds %s cancelled", sorted(kind_set))
            raise
        finally:
            _LOGGER.debug("Cleaning up listener for watch (kinds: %s)", kind_set)
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _store(
        self, resource_id: NamedResource, obj: dict[str, Any], created: bool
    ) -> None:
        self._resource_version += 1
        metadata = obj["metadata"]
        metadata["resourceVersion"] = str(self._resource_version)
        if created:
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata.setdefault("creationTimestamp", _now())
        self._objects[resource_id] = obj
        self.write_count += 1
        _LOGGER.debug(
            "%s object %s (resourceVersion %s)",
            "Created" if created else "Updated",
            resource_id,
            metadata["resourceVersion"],
        )
        self._fire(
            WatchEvent(
                WatchEventType.ADDED if created else WatchEventType.MODIFIED,
                resource_id,
                copy.deepcopy(obj),
            )
        )

    def _remove(self, resource_id: NamedResource) -> None:
        obj = self._objects.pop(resource_id)
        self._managed.pop(resource_id, None)
        self.write_count += 1
        _LOGGER.debug("Deleted object %s", resource_id)
        self._fire(WatchEvent(WatchEventType.DELETED, resource_id, obj))

    def _fire(self, event: WatchEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                _LOGGER.exception("Watch listener failed for %s", event.resource_id)
