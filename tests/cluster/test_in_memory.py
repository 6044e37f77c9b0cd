"""Tests for the in-memory cluster."""

import asyncio
from typing import Any

import pytest

from flux_kcl.cluster import (
    EventType,
    InMemoryClusterClient,
    WatchEvent,
    WatchEventType,
)
from flux_kcl.exceptions import ConflictError, ObjectNotFoundError
from flux_kcl.manifest import NamedResource

CM_ID = NamedResource("ConfigMap", "default", "cm")


def _config_map(
    data: dict[str, str], labels: dict[str, str] | None = None
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": "cm", "namespace": "default"}
    if labels:
        metadata["labels"] = labels
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}


@pytest.fixture(name="client")
def client_fixture() -> InMemoryClusterClient:
    """Create an empty in-memory cluster."""
    return InMemoryClusterClient()


async def test_apply_create_and_get(client: InMemoryClusterClient) -> None:
    """Test creating an object with server-side apply."""
    result = await client.apply(_config_map({"a": "1"}), "manager")
    assert result["metadata"]["generation"] == 1
    assert result["metadata"]["resourceVersion"]
    assert result["metadata"]["uid"]

    obj = await client.get(CM_ID)
    assert obj
    assert obj["data"] == {"a": "1"}
    assert client.field_managers(CM_ID) == {"manager"}
    assert await client.get(NamedResource("ConfigMap", "default", "other")) is None


async def test_apply_unchanged_is_noop(client: InMemoryClusterClient) -> None:
    """Test applying the same content does not write."""
    first = await client.apply(_config_map({"a": "1"}), "manager")
    count = client.write_count
    second = await client.apply(_config_map({"a": "1"}), "manager")
    assert client.write_count == count
    assert second["metadata"]["resourceVersion"] == first["metadata"]["resourceVersion"]


async def test_apply_update_bumps_generation(client: InMemoryClusterClient) -> None:
    """Test changing content bumps the generation and resource version."""
    first = await client.apply(_config_map({"a": "1"}), "manager")
    second = await client.apply(_config_map({"a": "2"}), "manager")
    assert second["metadata"]["generation"] == 2
    assert second["metadata"]["resourceVersion"] != first["metadata"]["resourceVersion"]


async def test_apply_removes_fields_no_longer_applied(
    client: InMemoryClusterClient,
) -> None:
    """Test fields dropped from the applied config are removed."""
    await client.apply(_config_map({"a": "1", "b": "2"}), "manager")
    obj = await client.apply(_config_map({"a": "1"}), "manager")
    assert obj["data"] == {"a": "1"}


async def test_apply_keeps_fields_of_other_managers(
    client: InMemoryClusterClient,
) -> None:
    """Test fields owned by another manager survive an apply."""
    await client.apply(_config_map({"a": "1"}), "manager")
    await client.apply(_config_map({"b": "2"}), "other")
    obj = await client.apply(_config_map({"a": "3"}), "manager")
    assert obj["data"] == {"a": "3", "b": "2"}
    assert client.field_managers(CM_ID) == {"manager", "other"}


async def test_apply_conflict(client: InMemoryClusterClient) -> None:
    """Test changing a field owned by another manager conflicts."""
    await client.apply(_config_map({"a": "1"}), "other")
    with pytest.raises(ConflictError, match='conflict with "other": .data.a'):
        await client.apply(_config_map({"a": "2"}), "manager")

    obj = await client.apply(_config_map({"a": "2"}), "manager", force=True)
    assert obj["data"] == {"a": "2"}
    assert client.field_managers(CM_ID) == {"manager"}


async def test_apply_same_value_shares_ownership(
    client: InMemoryClusterClient,
) -> None:
    """Test applying the value another manager set is not a conflict."""
    await client.apply(_config_map({"a": "1"}), "other")
    await client.apply(_config_map({"a": "1"}), "manager")
    assert client.field_managers(CM_ID) == {"manager", "other"}


async def test_delete(client: InMemoryClusterClient) -> None:
    """Test deleting objects."""
    await client.apply(_config_map({"a": "1"}), "manager")
    assert await client.delete(CM_ID)
    assert await client.get(CM_ID) is None
    assert not await client.delete(CM_ID)


async def test_get_and_delete_by_api_group(client: InMemoryClusterClient) -> None:
    """Test an apiVersion of another group does not address the object."""
    ingress_id = NamedResource("Ingress", "default", "web")
    await client.apply(
        {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {"name": "web", "namespace": "default"},
            "spec": {"ingressClassName": "nginx"},
        },
        "manager",
    )
    assert await client.get(ingress_id, "networking.k8s.io/v1beta1")
    assert await client.get(ingress_id, "extensions/v1beta1") is None
    assert not await client.delete(ingress_id, "extensions/v1beta1")
    assert client.get_object(ingress_id)

    assert await client.delete(ingress_id, "networking.k8s.io/v1")
    assert client.get_object(ingress_id) is None


async def test_delete_with_finalizers(client: InMemoryClusterClient) -> None:
    """Test deletion waits for finalizers to be removed."""
    client.add_object(_config_map({"a": "1"}))
    await client.set_finalizers(CM_ID, ["example.com/finalizer"])
    assert await client.delete(CM_ID)
    obj = client.get_object(CM_ID)
    assert obj
    assert obj["metadata"]["deletionTimestamp"]

    assert await client.set_finalizers(CM_ID, []) is None
    assert client.get_object(CM_ID) is None


async def test_update_status(client: InMemoryClusterClient) -> None:
    """Test status writes do not bump the generation."""
    client.add_object(_config_map({"a": "1"}))
    obj = await client.update_status(CM_ID, {"phase": "Ready"})
    assert obj["status"] == {"phase": "Ready"}
    assert obj["metadata"]["generation"] == 1

    count = client.write_count
    await client.update_status(CM_ID, {"phase": "Ready"})
    assert client.write_count == count

    with pytest.raises(ObjectNotFoundError):
        await client.update_status(
            NamedResource("ConfigMap", "default", "missing"), {}
        )


def test_add_object_keeps_status(client: InMemoryClusterClient) -> None:
    """Test replacing an object keeps its status and bumps its generation."""
    client.add_object(_config_map({"a": "1"}))
    obj = client.get_object(CM_ID)
    assert obj
    obj["status"] = {"phase": "Ready"}
    client.add_object(obj)

    replaced = client.add_object(_config_map({"a": "2"}))
    assert replaced["status"] == {"phase": "Ready"}
    assert replaced["metadata"]["generation"] == 2


async def test_list_resources(client: InMemoryClusterClient) -> None:
    """Test listing objects by kind and namespace."""
    client.add_object(_config_map({"a": "1"}))
    client.add_object(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "x", "namespace": "other"},
        }
    )
    client.add_object(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "s", "namespace": "default"},
        }
    )
    assert len(await client.list_resources("ConfigMap")) == 2
    assert [
        obj["metadata"]["name"]
        for obj in await client.list_resources("ConfigMap", "default")
    ] == ["cm"]
    assert len(client.list_objects()) == 3


async def test_record_event_aggregates(client: InMemoryClusterClient) -> None:
    """Test repeats of the last event increase its count."""
    for _ in range(3):
        await client.record_event(
            CM_ID, EventType.WARNING, "Failed", "boom", "controller"
        )
    await client.record_event(CM_ID, EventType.NORMAL, "Succeeded", "ok", "controller")
    assert [(e.reason, e.count) for e in client.events] == [
        ("Failed", 3),
        ("Succeeded", 1),
    ]


async def test_watch(client: InMemoryClusterClient) -> None:
    """Test a watch replays existing objects then streams changes."""
    client.add_object(_config_map({"a": "1"}))
    events: list[WatchEvent] = []

    async def consume() -> None:
        async for event in client.watch(["ConfigMap"]):
            events.append(event)
            if len(events) == 3:
                return

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    client.add_object(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "s", "namespace": "default"},
        }
    )
    await client.apply(_config_map({"a": "2"}), "manager")
    await client.delete(CM_ID)
    await asyncio.wait_for(task, timeout=5)

    assert [(e.type, e.resource_id) for e in events] == [
        (WatchEventType.ADDED, CM_ID),
        (WatchEventType.MODIFIED, CM_ID),
        (WatchEventType.DELETED, CM_ID),
    ]
