"""Apply and prune engine for the resources of a KclInstance.

The engine applies every desired manifest with server-side apply, then deletes
the resources of the previous inventory that are no longer desired. The new
inventory is computed from confirmed effects only:

- a desired resource is added once its apply succeeded, or kept if it was
  already owned and its apply failed
- a stale resource is dropped once its deletion is confirmed, and kept when
  its deletion failed
- a stale resource whose object is still rendered under another apiVersion
  is never deleted

so a partial failure never makes the inventory understate what the instance
owns in the cluster.
"""

import copy
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .cluster import ClusterClient
from .exceptions import (
    ApplyError,
    ConflictError,
    InputException,
    PruneError,
    ResourceError,
    TransientError,
)
from .inventory import Inventory
from .manifest import KCL_DOMAIN, InventoryEntry, KclInstance, manifest_identity

__all__ = [
    "FIELD_MANAGER",
    "Action",
    "ResourceResult",
    "ApplyResult",
    "RetryConfig",
    "ResourceApplier",
]

_LOGGER = logging.getLogger(__name__)

FIELD_MANAGER = "kcl-instance-controller"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
OWNER_NAME_LABEL = f"{KCL_DOMAIN}/name"
OWNER_NAMESPACE_LABEL = f"{KCL_DOMAIN}/namespace"

# Kinds that never carry a namespace
CLUSTER_SCOPED_KINDS = {
    "APIService",
    "CSIDriver",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "Node",
    "PersistentVolume",
    "PriorityClass",
    "RuntimeClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
    "VolumeAttachment",
}


class Action(StrEnum):
    """Outcome of a single resource operation."""

    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ResourceResult:
    """Result of applying or pruning one resource."""

    entry: InventoryEntry
    action: Action
    error: Exception | None = None

    def __str__(self) -> str:
        if self.error:
            return f"{self.entry} {self.action}: {self.error}"
        return f"{self.entry} {self.action}"


@dataclass
class ApplyResult:
    """Result of reconciling the resources of an instance."""

    inventory: Inventory
    """The inventory owned after this pass."""

    results: list[ResourceResult] = field(default_factory=list)
    """Per-resource results, applies first then prunes."""

    apply_errors: list[tuple[str, Exception]] = field(default_factory=list)
    prune_errors: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def error(self) -> ResourceError | None:
        """Return the cycle level error if any resource operation failed."""
        if self.apply_errors:
            return ApplyError(self.apply_errors + self.prune_errors)
        if self.prune_errors:
            return PruneError(self.prune_errors)
        return None

    @property
    def changed(self) -> list[ResourceResult]:
        return [
            r
            for r in self.results
            if r.action in (Action.CREATED, Action.CONFIGURED, Action.DELETED)
        ]

    def summary(self) -> str:
        """Return a human readable change set."""
        if not (changed := self.changed):
            return "no changes"
        return ", ".join(str(result) for result in changed)


@dataclass
class RetryConfig:
    """In-cycle retry of transient cluster failures."""

    attempts: int = 3
    """Total number of attempts per cluster call."""

    multiplier: float = 0.5
    """Base of the exponential wait between attempts, in seconds."""

    max_wait: float = 5.0
    """Upper bound of the wait between attempts, in seconds."""


def owner_labels(instance: KclInstance) -> dict[str, str]:
    """Return the labels marking a resource as owned by the instance."""
    return {
        MANAGED_BY_LABEL: FIELD_MANAGER,
        OWNER_NAME_LABEL: instance.name,
        OWNER_NAMESPACE_LABEL: instance.namespace,
    }


def _owner(obj: dict[str, Any]) -> tuple[str, str] | None:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    if (name := labels.get(OWNER_NAME_LABEL)) is None:
        return None
    return labels.get(OWNER_NAMESPACE_LABEL, ""), name


def _owned_by_other(obj: dict[str, Any], instance: KclInstance) -> str | None:
    """Return the owning instance if the object belongs to another instance."""
    if (owner := _owner(obj)) is None:
        return None
    if owner == (instance.namespace, instance.name):
        return None
    return "/".join(owner)


class ResourceApplier:
    """Reconciles the cluster resources of an instance against its inventory."""

    def __init__(
        self, cluster: ClusterClient, retry_config: RetryConfig | None = None
    ) -> None:
        """Initialize ResourceApplier."""
        self._cluster = cluster
        self._retry_config = retry_config or RetryConfig()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self._retry_config.attempts),
            wait=wait_exponential(
                multiplier=self._retry_config.multiplier,
                max=self._retry_config.max_wait,
            ),
            reraise=True,
        )

    def prepare(
        self, instance: KclInstance, desired: list[dict[str, Any]]
    ) -> list[tuple[InventoryEntry, dict[str, Any]]]:
        """Validate the desired manifests and add ownership metadata.

        Raises ApplyError without touching the cluster if a manifest lacks its
        identity or two manifests share one.
        """
        prepared: list[tuple[InventoryEntry, dict[str, Any]]] = []
        seen: set[str] = set()
        for doc in desired:
            try:
                entry = manifest_identity(doc)
            except InputException as err:
                raise ApplyError([("<invalid manifest>", err)]) from err
            obj = copy.deepcopy(doc)
            metadata = obj["metadata"]
            if entry.kind in CLUSTER_SCOPED_KINDS:
                metadata.pop("namespace", None)
            elif not entry.namespace:
                metadata["namespace"] = instance.namespace
            entry = manifest_identity(obj)
            if entry.id in seen:
                raise ApplyError(
                    [(str(entry), InputException("Duplicate resource in manifests"))]
                )
            seen.add(entry.id)
            metadata["labels"] = {
                **(metadata.get("labels") or {}),
                **owner_labels(instance),
            }
            prepared.append((entry, obj))
        return prepared

    async def _apply_one(
        self, instance: KclInstance, entry: InventoryEntry, obj: dict[str, Any]
    ) -> Action:
        live = None
        async for attempt in self._retrying():
            with attempt:
                live = await self._cluster.get(entry.named_resource)
        if live is not None and (owner := _owned_by_other(live, instance)):
            raise ConflictError(f"{entry} is owned by KclInstance {owner}")
        result: dict[str, Any] = {}
        async for attempt in self._retrying():
            with attempt:
                result = await self._cluster.apply(obj, FIELD_MANAGER)
        if live is None:
            return Action.CREATED
        if (result.get("metadata") or {}).get("resourceVersion") == live[
            "metadata"
        ].get("resourceVersion"):
            return Action.UNCHANGED
        return Action.CONFIGURED

    async def _prune_one(self, instance: KclInstance, entry: InventoryEntry) -> Action:
        live = None
        async for attempt in self._retrying():
            with attempt:
                live = await self._cluster.get(
                    entry.named_resource, entry.api_version
                )
        if live is None:
            _LOGGER.debug("Stale resource %s already absent", entry)
            return Action.DELETED
        if owner := _owned_by_other(live, instance):
            _LOGGER.info(
                "Stale resource %s is owned by KclInstance %s, releasing", entry, owner
            )
            return Action.SKIPPED
        async for attempt in self._retrying():
            with attempt:
                await self._cluster.delete(entry.named_resource, entry.api_version)
        return Action.DELETED

    async def reconcile_resources(
        self,
        instance: KclInstance,
        desired: list[dict[str, Any]],
        previous: Inventory,
    ) -> ApplyResult:
        """Apply the desired manifests and prune stale resources.

        Per-resource failures do not stop the pass. They are reported in the
        result, whose `error` is set if any operation failed.
        """
        prepared = self.prepare(instance, desired)
        desired_inventory = Inventory(entry for entry, _ in prepared)
        result = ApplyResult(inventory=Inventory())
        applied = Inventory()

        for entry, obj in prepared:
            try:
                action = await self._apply_one(instance, entry, obj)
            except Exception as err:
                _LOGGER.info("Failed to apply %s: %s", entry, err)
                result.results.append(ResourceResult(entry, Action.FAILED, err))
                result.apply_errors.append((str(entry), err))
                if entry in previous:
                    applied.add(entry)
                continue
            _LOGGER.debug("Applied %s: %s", entry, action)
            result.results.append(ResourceResult(entry, action))
            applied.add(entry)

        desired_ids = {entry.named_resource for entry in desired_inventory}
        applied_ids = {entry.named_resource for entry in applied}
        stale = previous.difference(desired_inventory)
        still_owned = Inventory()
        for entry in reversed(stale):
            if entry.named_resource in desired_ids:
                # Same object rendered with another apiVersion
                _LOGGER.info("Stale resource %s is still rendered, not pruning", entry)
                result.results.append(ResourceResult(entry, Action.SKIPPED))
                if entry.named_resource not in applied_ids:
                    still_owned.add(entry)
                continue
            try:
                action = await self._prune_one(instance, entry)
            except Exception as err:
                _LOGGER.info("Failed to prune %s: %s", entry, err)
                result.results.append(ResourceResult(entry, Action.FAILED, err))
                result.prune_errors.append((str(entry), err))
                still_owned.add(entry)
                continue
            _LOGGER.debug("Pruned %s: %s", entry, action)
            result.results.append(ResourceResult(entry, action))

        result.inventory = applied.union(
            Inventory(entry for entry in stale if entry in still_owned)
        )
        return result
