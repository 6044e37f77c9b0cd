"""Source Watcher.

Reads the current artifact of the Source referenced by a KclInstance and
decides whether the instance needs a new reconcile cycle. The watcher has no
side effects.
"""

from datetime import datetime
import logging

from flux_kcl.cluster import ClusterClient
from flux_kcl.exceptions import InputException, SourceNotFound, SourceNotReady
from flux_kcl.manifest import SOURCE_KINDS, KclInstance
from flux_kcl.status import (
    READY_CONDITION,
    STALLED_CONDITION,
    CONDITION_TRUE,
    Phase,
    parse_time,
)

from .artifact import SourceArtifact

__all__ = ["SourceWatcher", "reconcile_reason"]

_LOGGER = logging.getLogger(__name__)


class SourceWatcher:
    """Looks up the ready artifact of the Source of an instance."""

    def __init__(self, cluster: ClusterClient) -> None:
        """Initialize SourceWatcher."""
        self._cluster = cluster

    async def get_artifact(self, instance: KclInstance) -> SourceArtifact:
        """Return the current artifact of the Source referenced by `instance`.

        Raises SourceNotFound if the Source does not exist and SourceNotReady
        if it exists without an artifact.
        """
        source_id = instance.source_id
        if source_id.kind not in SOURCE_KINDS:
            raise InputException(
                f"Unsupported sourceRef kind '{instance.source_ref.kind}' for "
                f"KclInstance {instance.namespaced_name}"
            )
        if (obj := await self._cluster.get(source_id)) is None:
            raise SourceNotFound(f"Source {source_id} not found")
        status = obj.get("status") or {}
        artifact = status.get("artifact") or {}
        if not artifact.get("revision") or not artifact.get("url"):
            message = f"Source {source_id} has no artifact"
            for condition in status.get("conditions") or []:
                if condition.get("type") == READY_CONDITION and condition.get(
                    "message"
                ):
                    message = f"{message}: {condition['message']}"
            raise SourceNotReady(message)
        return SourceArtifact(
            kind=source_id.kind,
            namespace=source_id.namespace or instance.namespace,
            name=source_id.name,
            revision=artifact["revision"],
            url=artifact["url"],
            digest=artifact.get("digest"),
        )


def reconcile_reason(
    instance: KclInstance, artifact: SourceArtifact, now: datetime
) -> str | None:
    """Return why the instance needs a reconcile cycle, or None if it does not."""
    status = instance.status
    if artifact.revision != status.last_attempted_revision:
        return f"new revision '{artifact.revision}'"
    if instance.generation != status.observed_generation:
        return f"generation changed to {instance.generation}"
    if status.phase == Phase.SUSPENDED:
        return "resumed"
    if instance.requested_at and instance.requested_at != (
        status.last_handled_reconcile_at
    ):
        return f"requested at {instance.requested_at}"
    if status.phase in (Phase.FAILED, Phase.RECONCILING):
        stalled = status.get_condition(STALLED_CONDITION)
        if stalled is None or stalled.status != CONDITION_TRUE:
            return "retrying previous failure"
    if not status.last_reconcile_time:
        return "never reconciled"
    elapsed = now - parse_time(status.last_reconcile_time)
    if elapsed >= instance.interval_duration:
        return f"interval of {instance.interval or 'default'} elapsed"
    _LOGGER.debug(
        "KclInstance %s up to date at revision %s",
        instance.namespaced_name,
        artifact.revision,
    )
    return None
