"""Artifact representation."""

from dataclasses import dataclass

from flux_kcl.manifest import NamedResource


@dataclass(frozen=True, kw_only=True)
class SourceArtifact:
    """The ready artifact of a GitRepository or OCIRepository.

    Both source kinds are interchangeable for the KCL controller: only the
    revision and the location of the content matter.
    """

    kind: str
    """Kind of the source object."""

    namespace: str
    """Namespace of the source object."""

    name: str
    """Name of the source object."""

    revision: str
    """Content addressed revision, e.g. `main@sha1:<commit>`."""

    url: str
    """Location of the artifact content, a tarball URL or a local path."""

    digest: str | None = None
    """Optional digest of the artifact tarball."""

    @property
    def source_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)
