"""
KclInstance Controller implementation.

This controller reconciles KclInstance resources: it resolves the artifact of
the referenced Source, resolves the render arguments, renders the KCL module,
applies the rendered manifests and prunes the resources that are no longer
rendered. Progress and failures are recorded in the instance status.

Key Concepts:
    - KclInstance: A resource declaring a KCL module from a Source, its
      render arguments and the interval it is reconciled at.
    - Inventory: The resources created by an instance, recorded in its status
      and drained before the instance is allowed to be removed.
    - Work queue: Instances are reconciled by a bounded pool of workers, at
      most one worker per instance at a time.

Dependencies:
    - flux_kcl.cluster.ClusterClient: For all reads and writes.
    - flux_kcl.source_controller: For source revisions and artifacts.
    - flux_kcl.kcl.Renderer: For rendering the module.
    - flux_kcl.apply.ResourceApplier: For applying and pruning resources.
"""

import asyncio
from collections.abc import Callable
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
import logging
from typing import Any

from flux_kcl.apply import FIELD_MANAGER, ApplyResult, ResourceApplier, RetryConfig
from flux_kcl.arguments import resolve_arguments
from flux_kcl.cluster import ClusterClient, EventType, WatchEvent, WatchEventType
from flux_kcl.exceptions import (
    InputException,
    ObjectNotFoundError,
    ReconcileError,
    ReconcileSuperseded,
)
from flux_kcl.inventory import Inventory
from flux_kcl.kcl import Renderer, RenderOptions
from flux_kcl.manifest import (
    CONFIG_MAP_KIND,
    FINALIZER,
    KCL_DOMAIN,
    KCL_INSTANCE_KIND,
    REQUESTED_AT_ANNOTATION,
    SECRET_KIND,
    SOURCE_KINDS,
    KclInstance,
    KclInstanceStatus,
    NamedResource,
)
from flux_kcl.source_controller import (
    ArtifactFetcher,
    SourceArtifact,
    SourceWatcher,
    reconcile_reason,
)
from flux_kcl.status import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    FAILED_REASON,
    FINALIZING_REASON,
    PROGRESSING_REASON,
    READY_CONDITION,
    RECONCILING_CONDITION,
    STALLED_CONDITION,
    SUCCEEDED_REASON,
    SUSPENDED_REASON,
    Phase,
    format_time,
    parse_time,
    remove_condition,
    set_condition,
)
from flux_kcl.task import KeyedWorkQueue, QueueShutDown, get_task_service

_LOGGER = logging.getLogger(__name__)

REVISION_ANNOTATION = f"{KCL_DOMAIN}/revision"
FINALIZED_REASON = "Finalized"
SHUTDOWN_TIMEOUT = 30.0
DEPENDENCY_KINDS = (*SOURCE_KINDS, CONFIG_MAP_KIND, SECRET_KIND)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class KclControllerConfig:
    """Configuration for the KclInstanceController."""

    workers: int = 4
    """Number of instances reconciled concurrently."""

    requeue_base_delay: float = 1.0
    """First backoff delay in seconds after a transient failure."""

    requeue_max_delay: float = 300.0
    """Upper bound of the backoff delay after transient failures."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    """In-cycle retry of transient cluster failures."""


@dataclass
class ReconcileOutcome:
    """Scheduling decision of a reconcile attempt."""

    phase: Phase | None = None
    """Phase the instance was left in, None once it is gone."""

    requeue_after: timedelta | None = None
    """Reconcile again after this delay."""

    retry: bool = False
    """Reconcile again with rate limited backoff."""

    superseded: bool = False
    """A newer trigger replaced the attempt, reconcile again right away."""


def _instance_signature(obj: dict[str, Any]) -> tuple[Any, ...]:
    """Return the fields whose change triggers a reconcile."""
    metadata = obj.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    return (
        metadata.get("generation"),
        metadata.get("deletionTimestamp"),
        annotations.get(REQUESTED_AT_ANNOTATION),
    )


def _references(instance: KclInstance, resource_id: NamedResource) -> bool:
    """Return True if the instance depends on the given object."""
    if resource_id.kind in SOURCE_KINDS:
        return instance.source_id == resource_id
    if resource_id.namespace != instance.namespace:
        return False
    return any(
        ref.kind == resource_id.kind and ref.name == resource_id.name
        for ref in instance.config.arguments_from
    )


class KclInstanceController:
    """
    Controller for reconciling KclInstance resources.

    The controller watches KclInstance objects and the objects they depend on,
    and feeds the identity of the instances to reconcile into a keyed work
    queue drained by a pool of workers.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        renderer: Renderer,
        fetcher: ArtifactFetcher,
        config: KclControllerConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the controller.

        Args:
            cluster: Client for the cluster the instances live in
            renderer: Renders the KCL modules
            fetcher: Resolves source artifacts to local directories
            config: The configuration for the controller
            clock: Returns the current time, replaced in tests
        """
        self._cluster = cluster
        self._renderer = renderer
        self._fetcher = fetcher
        self._config = config or KclControllerConfig()
        self._clock = clock
        self._watcher = SourceWatcher(cluster)
        self._applier = ResourceApplier(cluster, self._config.retry)
        self._queue: KeyedWorkQueue[NamedResource] = KeyedWorkQueue(
            base_delay=self._config.requeue_base_delay,
            max_delay=self._config.requeue_max_delay,
        )
        self._seen: dict[NamedResource, tuple[Any, ...]] = {}
        self._triggers: dict[NamedResource, str] = {}
        self._watch_tasks: list[asyncio.Task[Any]] = []
        self._workers: list[asyncio.Task[Any]] = []

    @property
    def queue(self) -> KeyedWorkQueue[NamedResource]:
        """Return the work queue of the controller."""
        return self._queue

    def start(self) -> None:
        """Start the watches and the worker pool."""
        _LOGGER.info(
            "Starting KclInstanceController with %d workers", self._config.workers
        )
        task_service = get_task_service()
        self._watch_tasks.append(
            task_service.create_background_task(
                self._watch_instances(), name="kcl-instance-watch"
            )
        )
        self._watch_tasks.append(
            task_service.create_background_task(
                self._watch_dependencies(), name="kcl-dependency-watch"
            )
        )
        self._workers.extend(
            task_service.start_workers(
                self._config.workers, self._worker, name="kcl-instance-worker"
            )
        )

    async def close(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Stop the watches and workers.

        Workers finish the instance they are reconciling. Attempts still
        running after `timeout` seconds are cancelled.
        """
        _LOGGER.info("Closing KclInstanceController, cancelling tasks")
        self._queue.shutdown()
        for task in self._watch_tasks:
            task.cancel()
        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=timeout)
            for task in pending:
                _LOGGER.warning("Cancelling worker %s", task.get_name())
                task.cancel()
        tasks = [*self._watch_tasks, *self._workers]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_tasks.clear()
        self._workers.clear()

    def enqueue(self, resource_id: NamedResource, reason: str | None = None) -> None:
        """Request a reconcile of an instance.

        A `reason` forces a new cycle even if the trigger rules would skip it.
        """
        if reason:
            self._triggers[resource_id] = reason
        self._queue.add(resource_id)

    async def _watch_instances(self) -> None:
        """Enqueue instances on creation, spec change, deletion or manual trigger."""
        _LOGGER.info("Watching for KclInstance objects")
        async for event in self._cluster.watch([KCL_INSTANCE_KIND]):
            self._on_instance_event(event)
        _LOGGER.info("Stopped watching for KclInstance objects")

    def _on_instance_event(self, event: WatchEvent) -> None:
        resource_id = event.resource_id
        if event.type == WatchEventType.DELETED:
            self._seen.pop(resource_id, None)
            self._triggers.pop(resource_id, None)
            self._queue.forget(resource_id)
            return
        signature = _instance_signature(event.obj)
        if (
            event.type == WatchEventType.MODIFIED
            and self._seen.get(resource_id) == signature
        ):
            return
        self._seen[resource_id] = signature
        _LOGGER.debug("KclInstance %s %s, enqueueing", resource_id, event.type)
        self._queue.add(resource_id)

    async def _watch_dependencies(self) -> None:
        """Enqueue the instances referencing a changed Source, ConfigMap or Secret."""
        async for event in self._cluster.watch(DEPENDENCY_KINDS):
            for obj in await self._cluster.list_resources(KCL_INSTANCE_KIND):
                try:
                    instance = KclInstance.parse_doc(obj)
                except InputException:
                    continue
                if not _references(instance, event.resource_id):
                    continue
                if event.resource_id.kind in SOURCE_KINDS:
                    self._queue.add(instance.resource_id)
                elif (
                    event.type != WatchEventType.ADDED
                    or instance.status.phase == Phase.FAILED
                ):
                    self.enqueue(
                        instance.resource_id, f"{event.resource_id} {event.type}"
                    )

    async def _worker(self, index: int) -> None:
        """Reconcile instances from the queue until it is shut down."""
        while True:
            try:
                resource_id = await self._queue.get()
            except QueueShutDown:
                _LOGGER.debug("Worker %d stopped", index)
                return
            try:
                outcome = await self.reconcile(
                    resource_id, self._triggers.pop(resource_id, None)
                )
            except Exception as err:
                _LOGGER.error("Reconcile of %s failed: %s", resource_id, err)
                self._queue.add_rate_limited(resource_id)
            else:
                self._schedule(resource_id, outcome)
            finally:
                self._queue.done(resource_id)

    def _schedule(self, resource_id: NamedResource, outcome: ReconcileOutcome) -> None:
        if outcome.superseded:
            self._queue.add(resource_id)
            return
        if outcome.retry:
            self._queue.add_rate_limited(resource_id)
            return
        self._queue.forget(resource_id)
        if outcome.requeue_after is not None:
            self._queue.add_after(resource_id, outcome.requeue_after.total_seconds())

    async def reconcile(
        self, resource_id: NamedResource, force_reason: str | None = None
    ) -> ReconcileOutcome:
        """
        Reconcile a KclInstance.

        This method performs the following steps:
        1. Drains the inventory if the instance is being deleted.
        2. Records the suspended state if the instance is suspended.
        3. Looks up the source artifact and decides whether a cycle is needed.
        4. Resolves the arguments, renders the module, applies and prunes.
        5. Records the result in the instance status.

        Args:
            resource_id: The identifier of the KclInstance.
            force_reason: Run a cycle for this reason even if nothing changed.
        """
        if (obj := await self._cluster.get(resource_id)) is None:
            _LOGGER.debug("KclInstance %s no longer exists", resource_id)
            self._queue.forget(resource_id)
            return ReconcileOutcome()
        try:
            instance = KclInstance.parse_doc(obj)
        except InputException as err:
            _LOGGER.error("Invalid KclInstance %s: %s", resource_id, err)
            await self._event(resource_id, EventType.WARNING, err.reason, str(err))
            return ReconcileOutcome(phase=Phase.FAILED)

        try:
            if instance.deleting:
                return await self._finalize(instance)
            if instance.suspend:
                return await self._suspend(instance)
            return await self._reconcile(instance, force_reason)
        except ReconcileSuperseded as err:
            _LOGGER.info("Reconcile of %s superseded: %s", resource_id, err)
            return ReconcileOutcome(phase=Phase.RECONCILING, superseded=True)

    async def _suspend(self, instance: KclInstance) -> ReconcileOutcome:
        if instance.status.phase != Phase.SUSPENDED:
            _LOGGER.info("KclInstance %s suspended", instance.namespaced_name)
            status = copy.deepcopy(instance.status)
            status.phase = Phase.SUSPENDED.value
            remove_condition(status, RECONCILING_CONDITION)
            set_condition(
                status,
                READY_CONDITION,
                CONDITION_UNKNOWN,
                SUSPENDED_REASON,
                "Reconciliation is suspended",
                instance.generation,
                self._clock(),
            )
            await self._write_status(instance, status)
            await self._event(
                instance.resource_id,
                EventType.NORMAL,
                SUSPENDED_REASON,
                "Reconciliation is suspended",
            )
        return ReconcileOutcome(phase=Phase.SUSPENDED)

    async def _reconcile(
        self, instance: KclInstance, force_reason: str | None
    ) -> ReconcileOutcome:
        if FINALIZER not in instance.finalizers:
            await self._cluster.set_finalizers(
                instance.resource_id, [*instance.finalizers, FINALIZER]
            )
            instance.finalizers.append(FINALIZER)

        now = self._clock()
        try:
            artifact = await self._watcher.get_artifact(instance)
        except (ReconcileError, InputException) as err:
            return await self._failed(instance, err, None, None)

        reason = force_reason or reconcile_reason(instance, artifact, now)
        if reason is None:
            return ReconcileOutcome(
                phase=Phase(instance.status.phase or Phase.PENDING),
                requeue_after=self._remaining_interval(instance, now),
            )
        _LOGGER.info("Reconciling KclInstance %s: %s", instance.namespaced_name, reason)

        status = copy.deepcopy(instance.status)
        status.phase = Phase.RECONCILING.value
        message = f"Reconciliation in progress: {reason}"
        set_condition(
            status,
            RECONCILING_CONDITION,
            CONDITION_TRUE,
            PROGRESSING_REASON,
            message,
            instance.generation,
            now,
        )
        set_condition(
            status,
            READY_CONDITION,
            CONDITION_UNKNOWN,
            PROGRESSING_REASON,
            message,
            instance.generation,
            now,
        )
        await self._write_status(instance, status)
        await self._event(
            instance.resource_id,
            EventType.NORMAL,
            PROGRESSING_REASON,
            message,
            artifact.revision,
        )

        result: ApplyResult | None = None
        try:
            module_path = await self._fetcher.module_path(artifact, instance.path)
            await self._check_superseded(instance)
            arguments = await resolve_arguments(instance, self._cluster)
            await self._check_superseded(instance)
            rendered = await self._renderer.render(
                module_path, arguments, RenderOptions.from_config(instance.config)
            )
            await self._check_superseded(instance)
            result = await self._applier.reconcile_resources(
                instance,
                rendered.manifests,
                Inventory(instance.status.inventory),
            )
            if (error := result.error) is not None:
                raise error
        except ReconcileSuperseded:
            raise
        except (ReconcileError, InputException) as err:
            return await self._failed(instance, err, artifact, result)
        except Exception as err:
            _LOGGER.exception(
                "Unexpected failure reconciling %s", instance.namespaced_name
            )
            return await self._failed(instance, err, artifact, result)
        return await self._succeeded(instance, artifact, result)

    async def _check_superseded(self, instance: KclInstance) -> None:
        """Stop the attempt if the instance changed since it started."""
        obj = await self._cluster.get(instance.resource_id)
        if obj is None:
            raise ReconcileSuperseded(f"{instance.resource_id} was removed")
        metadata = obj.get("metadata") or {}
        if metadata.get("deletionTimestamp"):
            raise ReconcileSuperseded(f"{instance.resource_id} is being deleted")
        if metadata.get("generation", 0) != instance.generation:
            raise ReconcileSuperseded(
                f"{instance.resource_id} changed to generation "
                f"{metadata.get('generation')}"
            )

    async def _succeeded(
        self, instance: KclInstance, artifact: SourceArtifact, result: ApplyResult
    ) -> ReconcileOutcome:
        now = self._clock()
        status = self._finished_status(instance, now)
        status.last_attempted_revision = artifact.revision
        status.last_applied_revision = artifact.revision
        status.inventory = result.inventory.entries
        status.phase = Phase.READY.value
        summary = result.summary()
        set_condition(
            status,
            READY_CONDITION,
            CONDITION_TRUE,
            SUCCEEDED_REASON,
            f"Applied revision: {artifact.revision}",
            instance.generation,
            now,
        )
        remove_condition(status, STALLED_CONDITION)
        await self._write_status(instance, status)
        _LOGGER.info(
            "KclInstance %s ready at revision %s: %s",
            instance.namespaced_name,
            artifact.revision,
            summary,
        )
        await self._event(
            instance.resource_id,
            EventType.NORMAL,
            SUCCEEDED_REASON,
            f"Reconciliation finished, {summary}",
            artifact.revision,
        )
        return ReconcileOutcome(
            phase=Phase.READY, requeue_after=instance.interval_duration
        )

    async def _failed(
        self,
        instance: KclInstance,
        err: Exception,
        artifact: SourceArtifact | None,
        result: ApplyResult | None,
    ) -> ReconcileOutcome:
        """Record a failed cycle.

        The applied revision is never advanced. The attempted revision only
        advances for failures that are not retried with backoff.
        """
        transient = bool(getattr(err, "transient", False))
        reason = getattr(err, "reason", FAILED_REASON)
        now = self._clock()
        status = self._finished_status(instance, now)
        if artifact is not None and not transient:
            status.last_attempted_revision = artifact.revision
        if result is not None:
            status.inventory = result.inventory.entries
        status.phase = Phase.FAILED.value
        set_condition(
            status,
            READY_CONDITION,
            CONDITION_FALSE,
            reason,
            str(err),
            instance.generation,
            now,
        )
        if transient:
            remove_condition(status, STALLED_CONDITION)
        else:
            set_condition(
                status,
                STALLED_CONDITION,
                CONDITION_TRUE,
                reason,
                str(err),
                instance.generation,
                now,
            )
        await self._write_status(instance, status)
        _LOGGER.info(
            "KclInstance %s failed (%s): %s", instance.namespaced_name, reason, err
        )
        await self._event(
            instance.resource_id,
            EventType.WARNING,
            reason,
            str(err),
            artifact.revision if artifact else None,
        )
        if transient:
            return ReconcileOutcome(phase=Phase.FAILED, retry=True)
        return ReconcileOutcome(
            phase=Phase.FAILED, requeue_after=instance.interval_duration
        )

    def _finished_status(
        self, instance: KclInstance, now: datetime
    ) -> KclInstanceStatus:
        status = copy.deepcopy(instance.status)
        status.observed_generation = instance.generation
        status.last_reconcile_time = format_time(now)
        if instance.requested_at:
            status.last_handled_reconcile_at = instance.requested_at
        remove_condition(status, RECONCILING_CONDITION)
        return status

    async def _finalize(self, instance: KclInstance) -> ReconcileOutcome:
        """Drain the inventory of a deleted instance, then release it."""
        if FINALIZER not in instance.finalizers:
            return ReconcileOutcome()
        _LOGGER.info(
            "Finalizing KclInstance %s, pruning %d resources",
            instance.namespaced_name,
            len(instance.status.inventory),
        )
        now = self._clock()
        status = copy.deepcopy(instance.status)
        status.phase = Phase.FINALIZING.value
        set_condition(
            status,
            READY_CONDITION,
            CONDITION_UNKNOWN,
            FINALIZING_REASON,
            "Pruning owned resources",
            instance.generation,
            now,
        )
        await self._write_status(instance, status)

        result = await self._applier.reconcile_resources(
            instance, [], Inventory(instance.status.inventory)
        )
        status.inventory = result.inventory.entries
        if (error := result.error) is not None:
            set_condition(
                status,
                READY_CONDITION,
                CONDITION_FALSE,
                error.reason,
                str(error),
                instance.generation,
                self._clock(),
            )
            await self._write_status(instance, status)
            _LOGGER.info(
                "Finalizing KclInstance %s failed: %s", instance.namespaced_name, error
            )
            await self._event(
                instance.resource_id, EventType.WARNING, error.reason, str(error)
            )
            if error.transient:
                return ReconcileOutcome(phase=Phase.FINALIZING, retry=True)
            return ReconcileOutcome(
                phase=Phase.FINALIZING, requeue_after=instance.interval_duration
            )

        await self._write_status(instance, status)
        await self._event(
            instance.resource_id,
            EventType.NORMAL,
            FINALIZED_REASON,
            f"Pruned resources: {result.summary()}",
        )
        await self._cluster.set_finalizers(
            instance.resource_id, [f for f in instance.finalizers if f != FINALIZER]
        )
        _LOGGER.info("KclInstance %s finalized", instance.namespaced_name)
        self._queue.forget(instance.resource_id)
        return ReconcileOutcome()

    def _remaining_interval(self, instance: KclInstance, now: datetime) -> timedelta:
        interval = instance.interval_duration
        if not instance.status.last_reconcile_time:
            return interval
        elapsed = now - parse_time(instance.status.last_reconcile_time)
        return max(interval - elapsed, timedelta())

    async def _write_status(
        self, instance: KclInstance, status: KclInstanceStatus
    ) -> None:
        try:
            await self._cluster.update_status(instance.resource_id, status.to_dict())
        except ObjectNotFoundError as err:
            _LOGGER.error(
                "Failed to update status of %s: %s", instance.namespaced_name, err
            )
            raise ReconcileSuperseded(str(err)) from err
        instance.status = status

    async def _event(
        self,
        resource_id: NamedResource,
        event_type: EventType,
        reason: str,
        message: str,
        revision: str | None = None,
    ) -> None:
        annotations = {REVISION_ANNOTATION: revision} if revision else None
        try:
            await self._cluster.record_event(
                resource_id, event_type, reason, message, FIELD_MANAGER, annotations
            )
        except ReconcileError as err:
            _LOGGER.error("Failed to record event for %s: %s", resource_id, err)
