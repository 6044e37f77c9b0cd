"""Representation of the objects managed by the KCL instance controller.

The KclInstance custom resource and its status are modeled as dataclasses so
they can be validated when read from the cluster and serialized when the status
is written back. Manifests produced by the renderer are dynamically shaped and
stay plain dictionaries; identity fields are extracted lazily with
`manifest_identity`.
"""

from dataclasses import dataclass, field
from datetime import timedelta
import logging
import re
from typing import Any, Optional

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.codecs.yaml import yaml_encode

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "InventoryEntry",
    "SourceReference",
    "ArgumentsReference",
    "InstanceConfig",
    "Condition",
    "KclInstanceStatus",
    "KclInstance",
    "manifest_identity",
    "parse_duration",
]

_LOGGER = logging.getLogger(__name__)


KCL_DOMAIN = "kcl.evrone.com"
KCL_API_VERSION = f"{KCL_DOMAIN}/v1alpha1"
KCL_INSTANCE_KIND = "KclInstance"
SOURCE_DOMAIN = "source.toolkit.fluxcd.io"
GIT_REPOSITORY = "GitRepository"
OCI_REPOSITORY = "OCIRepository"
SOURCE_KINDS = (GIT_REPOSITORY, OCI_REPOSITORY)
# Spelling accepted for compatibility with older instance definitions
SOURCE_KIND_ALIASES = {"OciRepository": OCI_REPOSITORY}
CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
FINALIZER = f"{KCL_DOMAIN}/finalizer"
REQUESTED_AT_ANNOTATION = "reconcile.fluxcd.io/requestedAt"
DEFAULT_ARGUMENTS_KEY = "arguments.yaml"
DEFAULT_INTERVAL = "5m"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go style duration string such as `20s`, `10m` or `1h30m`."""
    value = value.strip()
    if not value:
        raise InputException("Invalid empty duration")
    pos = 0
    total = timedelta()
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise InputException(f"Invalid duration '{value}'")
    return total


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an apiVersion into group and version, core group is empty."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass(frozen=True)
class InventoryEntry(DataClassDictMixin):
    """Identity of a cluster resource owned by a KclInstance."""

    group: str
    """API group of the resource, empty for the core group."""

    version: str
    """API version within the group."""

    kind: str
    """Kind of the resource."""

    name: str
    """Name of the resource."""

    namespace: Optional[str] = None
    """Namespace of the resource, unset for cluster scoped resources."""

    @property
    def api_version(self) -> str:
        """Return the apiVersion string for the resource."""
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @property
    def id(self) -> str:
        """Return a stable string id for the resource."""
        return f"{self.namespace or ''}_{self.name}_{self.group}_{self.kind}"

    @property
    def named_resource(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.kind}/{self.named_resource.namespaced_name}"

    class Config(BaseConfig):
        omit_none = True


def manifest_identity(
    doc: dict[str, Any], default_namespace: str | None = None
) -> InventoryEntry:
    """Extract the identity of a rendered manifest.

    The namespace falls back to `default_namespace` when the manifest does not
    specify one. Raises InputException if `kind` or `metadata.name` is missing.
    """
    if not isinstance(doc, dict):
        raise InputException(f"Invalid manifest, expected a mapping: {doc!r}")
    if not (kind := doc.get("kind")):
        raise InputException(f"Invalid manifest missing kind: {doc}")
    metadata = doc.get("metadata") or {}
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid manifest missing metadata.name: {doc}")
    group, version = split_api_version(doc.get("apiVersion") or "")
    if not version:
        raise InputException(f"Invalid manifest missing apiVersion: {doc}")
    return InventoryEntry(
        group=group,
        version=version,
        kind=kind,
        name=name,
        namespace=metadata.get("namespace") or default_namespace,
    )


@dataclass
class SourceReference(BaseManifest):
    """Reference to the Source object providing the KCL module."""

    kind: str
    """The kind of the source, GitRepository or OCIRepository."""

    name: str
    """The name of the source object."""

    namespace: Optional[str] = None
    """The namespace of the source, defaults to the instance namespace."""


@dataclass
class ArgumentsReference(BaseManifest):
    """A reference to a ConfigMap or Secret containing render arguments."""

    kind: str
    """The kind of resource, ConfigMap or Secret."""

    name: str
    """The name of the resource, in the namespace of the instance."""

    arguments_key: str = field(
        metadata=field_options(alias="argumentsKey"), default=DEFAULT_ARGUMENTS_KEY
    )
    """The key in the resource data that contains the arguments."""

    target_path: Optional[str] = field(
        metadata=field_options(alias="targetPath"), default=None
    )
    """Dot notation path the single value is written to."""

    optional: bool = False
    """Whether a missing referenced object is tolerated."""


@dataclass
class InstanceConfig(BaseManifest):
    """Render configuration of a KclInstance."""

    arguments: dict[str, str] = field(default_factory=dict)
    """Inline top level arguments."""

    arguments_from: list[ArgumentsReference] = field(
        metadata=field_options(alias="argumentsFrom"), default_factory=list
    )
    """References resolved in order after the inline arguments."""

    vendor: bool = False
    """Resolve module dependencies before evaluation."""

    sort_keys: bool = field(metadata=field_options(alias="sortKeys"), default=False)
    """Emit documents with deterministic key ordering."""

    show_hidden: bool = field(
        metadata=field_options(alias="showHidden"), default=False
    )
    """Include hidden attributes in the output."""


@dataclass
class Condition(BaseManifest):
    """Standard kubernetes status condition."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[str] = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    observed_generation: Optional[int] = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )


@dataclass
class KclInstanceStatus(BaseManifest):
    """Observed state of a KclInstance."""

    observed_generation: Optional[int] = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )
    last_attempted_revision: Optional[str] = field(
        metadata=field_options(alias="lastAttemptedRevision"), default=None
    )
    last_applied_revision: Optional[str] = field(
        metadata=field_options(alias="lastAppliedRevision"), default=None
    )
    inventory: list[InventoryEntry] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    phase: Optional[str] = None
    last_reconcile_time: Optional[str] = field(
        metadata=field_options(alias="lastReconcileTime"), default=None
    )
    last_handled_reconcile_at: Optional[str] = field(
        metadata=field_options(alias="lastHandledReconcileAt"), default=None
    )

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, if present."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


@dataclass
class KclInstance(BaseManifest):
    """A desired KCL rendered configuration and its reconciliation status."""

    name: str
    """The name of the instance."""

    namespace: str
    """The namespace of the instance."""

    path: str
    """Location of the module within the source artifact."""

    source_ref: SourceReference
    """The Source providing the module."""

    config: InstanceConfig = field(default_factory=InstanceConfig)
    """Render configuration."""

    interval: Optional[str] = None
    """Reconciliation cadence when nothing else triggers it."""

    suspend: bool = False
    """When true, render and apply are skipped."""

    generation: int = 0
    """The metadata.generation of the object."""

    finalizers: list[str] = field(default_factory=list)
    """The metadata.finalizers of the object."""

    deletion_timestamp: Optional[str] = None
    """Set once deletion of the object was requested."""

    annotations: dict[str, str] = field(default_factory=dict)
    """The metadata.annotations of the object."""

    status: KclInstanceStatus = field(default_factory=KclInstanceStatus)
    """Observed state."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "KclInstance":
        """Parse a KclInstance from a raw kubernetes object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid {cls.__name__} missing apiVersion: {doc}")
        if not api_version.startswith(KCL_DOMAIN):
            raise InputException(
                f"Invalid {cls.__name__} expected '{KCL_DOMAIN}': {doc}"
            )
        if doc.get("kind") != KCL_INSTANCE_KIND:
            raise InputException(
                f"Invalid {cls.__name__} expected kind {KCL_INSTANCE_KIND}: {doc}"
            )
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(
                f"Invalid {cls.__name__} missing metadata.namespace: {doc}"
            )
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        if (path := spec.get("path")) is None:
            raise InputException(f"Invalid {cls.__name__} missing spec.path: {doc}")
        if not (source_ref := spec.get("sourceRef")):
            raise InputException(
                f"Invalid {cls.__name__} missing spec.sourceRef: {doc}"
            )
        if not source_ref.get("kind") or not source_ref.get("name"):
            raise InputException(
                f"Invalid {cls.__name__} missing spec.sourceRef kind or name: {doc}"
            )
        if interval := spec.get("interval"):
            if not isinstance(interval, str) or parse_duration(interval) <= timedelta():
                raise InputException(
                    f"Invalid {cls.__name__} {name} spec.interval must be a "
                    f"positive duration: {interval!r}"
                )
        try:
            config = InstanceConfig.from_dict(spec.get("config") or {})
            status = KclInstanceStatus.from_dict(doc.get("status") or {})
        except (ValueError, TypeError) as err:
            raise InputException(f"Invalid {cls.__name__} {name}: {err}") from err
        return cls(
            name=name,
            namespace=namespace,
            path=path,
            source_ref=SourceReference(
                kind=source_ref["kind"],
                name=source_ref["name"],
                namespace=source_ref.get("namespace") or namespace,
            ),
            config=config,
            interval=interval,
            suspend=bool(spec.get("suspend", False)),
            generation=int(metadata.get("generation", 0)),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            annotations=dict(metadata.get("annotations") or {}),
            status=status,
        )

    @property
    def resource_id(self) -> NamedResource:
        """Return the identifier of this instance."""
        return NamedResource(KCL_INSTANCE_KIND, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def source_id(self) -> NamedResource:
        """Return the identifier of the referenced Source."""
        kind = SOURCE_KIND_ALIASES.get(self.source_ref.kind, self.source_ref.kind)
        return NamedResource(
            kind, self.source_ref.namespace or self.namespace, self.source_ref.name
        )

    @property
    def interval_duration(self) -> timedelta:
        """Return the reconciliation interval."""
        return parse_duration(self.interval or DEFAULT_INTERVAL)

    @property
    def requested_at(self) -> str | None:
        """Return the value of the manual reconcile trigger annotation."""
        return self.annotations.get(REQUESTED_AT_ANNOTATION)

    @property
    def deleting(self) -> bool:
        """Return True if deletion of the instance was requested."""
        return self.deletion_timestamp is not None
