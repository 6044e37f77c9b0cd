"""Tests for the inventory of owned resources."""

from flux_kcl.inventory import Inventory
from flux_kcl.manifest import InventoryEntry


def _entry(name: str, kind: str = "ConfigMap", version: str = "v1") -> InventoryEntry:
    return InventoryEntry(
        group="", version=version, kind=kind, name=name, namespace="default"
    )


def test_unique_by_identity() -> None:
    """Test entries with the same identity replace each other."""
    inventory = Inventory([_entry("a"), _entry("b"), _entry("a", version="v2")])
    assert len(inventory) == 2
    assert [e.name for e in inventory] == ["a", "b"]
    assert inventory.entries[0].version == "v2"
    assert _entry("a") in inventory
    assert _entry("a").id in inventory
    assert _entry("c") not in inventory


def test_difference_and_union() -> None:
    """Test set operations keep the order of the inventory."""
    previous = Inventory([_entry("a"), _entry("b"), _entry("c")])
    desired = Inventory([_entry("c"), _entry("d")])

    stale = previous.difference(desired)
    assert [e.name for e in stale] == ["a", "b"]
    assert [e.name for e in reversed(stale)] == ["b", "a"]
    assert [e.name for e in desired.union(stale)] == ["c", "d", "a", "b"]


def test_serialization() -> None:
    """Test the inventory is stored in its status form."""
    inventory = Inventory(
        [
            _entry("a"),
            InventoryEntry(
                group="rbac.authorization.k8s.io",
                version="v1",
                kind="ClusterRole",
                name="r",
            ),
        ]
    )
    data = inventory.to_dicts()
    assert data == [
        {
            "group": "",
            "version": "v1",
            "kind": "ConfigMap",
            "name": "a",
            "namespace": "default",
        },
        {
            "group": "rbac.authorization.k8s.io",
            "version": "v1",
            "kind": "ClusterRole",
            "name": "r",
        },
    ]
    assert Inventory.from_dicts(data) == inventory
    assert Inventory() != inventory
