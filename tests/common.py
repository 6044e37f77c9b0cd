"""Shared test doubles for flux-kcl."""

from collections.abc import Callable
import copy
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any

from flux_kcl.cluster import InMemoryClusterClient
from flux_kcl.exceptions import ClusterTimeout, RenderError
from flux_kcl.kcl import Renderer, RenderOptions, RenderResult, fingerprint
from flux_kcl.manifest import NamedResource


class FakeRenderer(Renderer):
    """Renderer returning fixed manifests and recording its calls."""

    def __init__(self, manifests: list[dict[str, Any]] | None = None) -> None:
        self.manifests = manifests or []
        self.error: str | None = None
        self.calls: list[tuple[Path, dict[str, str], RenderOptions]] = []
        self.on_render: Callable[[], None] | None = None

    async def render(
        self, module_path: Path, arguments: dict[str, str], options: RenderOptions
    ) -> RenderResult:
        self.calls.append((module_path, dict(arguments), options))
        if self.on_render:
            self.on_render()
        if self.error:
            raise RenderError(self.error)
        manifests = copy.deepcopy(self.manifests)
        return RenderResult(manifests, fingerprint(manifests))


class FaultyClusterClient(InMemoryClusterClient):
    """In-memory cluster failing apply or delete of chosen object names."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_apply: set[str] = set()
        self.fail_delete: set[str] = set()

    async def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = False
    ) -> dict[str, Any]:
        if obj["metadata"]["name"] in self.fail_apply:
            raise ClusterTimeout(f"Timeout applying {obj['metadata']['name']}")
        return await super().apply(obj, field_manager, force)

    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        if resource_id.name in self.fail_delete:
            raise ClusterTimeout(f"Timeout deleting {resource_id.name}")
        return await super().delete(resource_id, api_version)


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def advance(self, delta: timedelta) -> None:
        self.now += delta

    def __call__(self) -> datetime:
        return self.now


def config_map(name: str, data: dict[str, str] | None = None) -> dict[str, Any]:
    """Return a rendered ConfigMap manifest."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name},
        "data": data or {"key": name},
    }
