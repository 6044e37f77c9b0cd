"""The set of cluster resources owned by a KclInstance.

The inventory is recorded in the instance status and is the only record of
what an instance created. Entries are unique by identity, where the identity
ignores the API version so a resource moving between versions of its group is
still recognized as the same object.
"""

from collections.abc import Iterable, Iterator
from typing import Any

from .manifest import InventoryEntry

__all__ = ["Inventory"]


class Inventory:
    """Ordered, unique-by-identity collection of InventoryEntry."""

    def __init__(self, entries: Iterable[InventoryEntry] = ()) -> None:
        """Initialize Inventory, later entries replacing earlier duplicates."""
        self._entries: dict[str, InventoryEntry] = {}
        for entry in entries:
            self.add(entry)

    @classmethod
    def from_dicts(cls, entries: Iterable[dict[str, Any]]) -> "Inventory":
        """Load an inventory from its serialized status form."""
        return cls(InventoryEntry.from_dict(entry) for entry in entries)

    def to_dicts(self) -> list[dict[str, Any]]:
        """Serialize the inventory for the status record."""
        return [entry.to_dict() for entry in self._entries.values()]

    def add(self, entry: InventoryEntry) -> None:
        """Add an entry, replacing an existing entry with the same identity."""
        self._entries[entry.id] = entry

    def difference(self, other: "Inventory") -> "Inventory":
        """Return the entries of this inventory not present in `other`."""
        return Inventory(e for e in self._entries.values() if e.id not in other)

    def union(self, other: "Inventory") -> "Inventory":
        """Return the entries of both inventories, this one first."""
        return Inventory([*self._entries.values(), *other])

    @property
    def entries(self) -> list[InventoryEntry]:
        return list(self._entries.values())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, InventoryEntry):
            return item.id in self._entries
        return item in self._entries

    def __iter__(self) -> Iterator[InventoryEntry]:
        return iter(list(self._entries.values()))

    def __reversed__(self) -> Iterator[InventoryEntry]:
        return iter(list(reversed(self._entries.values())))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Inventory):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Inventory({[str(e) for e in self._entries.values()]})"
