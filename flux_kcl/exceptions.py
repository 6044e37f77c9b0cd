"""Exceptions related to flux-kcl.

Errors raised during a reconcile cycle carry a `reason` that is written to the
`Ready` condition of the KclInstance, and a `transient` flag that decides
whether the cycle is retried with backoff or only on the next natural trigger.
"""

from collections.abc import Iterable

__all__ = [
    "FluxKclException",
    "InputException",
    "CommandException",
    "ReconcileError",
    "SourceNotFound",
    "SourceNotReady",
    "ReferenceNotFound",
    "ReferenceKeyMissing",
    "ReferenceMalformed",
    "RenderError",
    "ResourceError",
    "ApplyError",
    "PruneError",
    "TransientError",
    "ClusterTimeout",
    "ArtifactFetchError",
    "ConflictError",
    "ObjectNotFoundError",
    "ReconcileSuperseded",
]


class FluxKclException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxKclException):
    """Raised when the input files or values are not formatted as expected."""

    reason = "InvalidInput"
    transient = False


class CommandException(FluxKclException):
    """Raised when there is a failure running a subcommand."""


class ObjectNotFoundError(FluxKclException):
    """Raised when an object is not found in the cluster."""


class ReconcileError(FluxKclException):
    """Base class for failures of a single reconcile cycle."""

    reason = "ReconciliationFailed"
    transient = False


class SourceNotFound(ReconcileError):
    """Raised when the referenced Source object does not exist."""

    reason = "SourceNotFound"


class SourceNotReady(ReconcileError):
    """Raised when the Source exists but has no ready artifact yet."""

    reason = "SourceNotReady"


class ReferenceNotFound(ReconcileError):
    """Raised when a non-optional ArgumentsReference object is absent."""

    reason = "ReferenceNotFound"


class ReferenceKeyMissing(ReconcileError):
    """Raised when a referenced object lacks the arguments key."""

    reason = "ReferenceKeyMissing"


class ReferenceMalformed(ReconcileError):
    """Raised when a referenced value cannot be used as arguments."""

    reason = "ReferenceMalformed"


class RenderError(ReconcileError):
    """Raised when the KCL module fails to compile or evaluate."""

    reason = "RenderError"


class TransientError(ReconcileError):
    """Raised for connectivity problems and timeouts talking to a collaborator."""

    reason = "TransientError"
    transient = True


class ClusterTimeout(TransientError):
    """Raised when a cluster request timed out."""


class ArtifactFetchError(TransientError):
    """Raised when a source artifact could not be downloaded or extracted."""


class ConflictError(ReconcileError):
    """Raised when a resource is owned by another instance or field manager."""

    reason = "ConflictError"


class ReconcileSuperseded(FluxKclException):
    """Raised at a phase boundary when a newer trigger replaced the attempt."""


class ResourceError(ReconcileError):
    """Aggregate of per-resource failures within one apply/prune pass."""

    verb = "process"

    def __init__(self, errors: Iterable[tuple[str, Exception]]) -> None:
        self.errors = list(errors)
        details = "; ".join(f"{resource}: {err}" for resource, err in self.errors)
        super().__init__(
            f"Failed to {self.verb} {len(self.errors)} resource(s): {details}"
        )

    @property
    def transient(self) -> bool:  # type: ignore[override]
        """Return True if every aggregated failure is transient."""
        return bool(self.errors) and all(
            getattr(err, "transient", False) for _, err in self.errors
        )


class ApplyError(ResourceError):
    """Raised when one or more desired resources failed to apply."""

    reason = "ApplyError"
    verb = "apply"


class PruneError(ResourceError):
    """Raised when one or more stale resources failed to be deleted."""

    reason = "PruneError"
    verb = "prune"
