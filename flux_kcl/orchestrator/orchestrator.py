"""Orchestrator for flux-kcl.

This module provides the orchestrator that loads resources into an in-memory
cluster, runs the KclInstance controller against it and waits until every
instance has settled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import git

from flux_kcl.arguments import resolve_arguments
from flux_kcl.cluster import InMemoryClusterClient
from flux_kcl.exceptions import FluxKclException, InputException
from flux_kcl.kcl import KclRenderer, Renderer, RenderOptions, RenderResult
from flux_kcl.kcl_controller import KclControllerConfig, KclInstanceController
from flux_kcl.manifest import KCL_INSTANCE_KIND, SOURCE_KINDS, KclInstance
from flux_kcl.source_controller import ArtifactFetcher, FetcherConfig, SourceWatcher
from flux_kcl.status import Phase
from flux_kcl.task import get_task_service

from .loader import LoadOptions, ResourceLoader

_LOGGER = logging.getLogger(__name__)

LOCAL_REVISION = "local"
SETTLED_PHASES = {Phase.READY, Phase.FAILED, Phase.SUSPENDED}


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    kcl_bin: str = "kcl"
    """The kcl executable used to render modules."""

    settle_timeout: float = 300.0
    """Seconds to wait for all instances to settle."""

    poll_interval: float = 0.05
    """Seconds between checks for settled instances."""

    controller_config: KclControllerConfig = field(
        default_factory=KclControllerConfig
    )
    fetcher_config: FetcherConfig = field(default_factory=FetcherConfig)


@dataclass
class BootstrapOptions:
    """Options for the bootstrap process.

    Attributes:
        path: File or directory to load resources from.
    """

    path: Path


def local_revision(path: Path) -> tuple[Path, str]:
    """Return the repository root and revision of a local checkout.

    The revision has the form `<branch>@sha1:<commit>`. Paths outside a git
    checkout use the path itself and a fixed revision.
    """
    try:
        repo = git.repo.Repo(str(path), search_parent_directories=True)
        commit = repo.head.commit.hexsha
    except (git.GitError, ValueError) as err:
        _LOGGER.debug("Path %s is not a git checkout: %s", path, err)
        root = path if path.is_dir() else path.parent
        return root.resolve(), LOCAL_REVISION
    try:
        branch = repo.active_branch.name
    except TypeError:
        branch = "HEAD"
    return Path(repo.working_tree_dir or path).resolve(), f"{branch}@sha1:{commit}"


def is_settled(obj: dict[str, Any]) -> bool:
    """Return True if the controller has nothing left to do for an instance."""
    try:
        instance = KclInstance.parse_doc(obj)
    except InputException:
        return True
    if instance.deleting:
        return False
    if instance.suspend:
        return instance.status.phase == Phase.SUSPENDED
    return (
        instance.status.phase in SETTLED_PHASES
        and instance.status.observed_generation == instance.generation
    )


class Orchestrator:
    """Orchestrator for running the controller against an in-memory cluster.

    The orchestrator is responsible for:
    - Loading resources and bootstrapping local sources
    - Managing the lifecycle of the controller
    - Waiting until all instances are reconciled
    """

    def __init__(
        self,
        cluster: InMemoryClusterClient,
        config: OrchestratorConfig | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        """Initialize the orchestrator."""
        self.cluster = cluster
        self.config = config or OrchestratorConfig()
        self.renderer = renderer or KclRenderer(self.config.kcl_bin)
        self.fetcher = ArtifactFetcher(self.config.fetcher_config)
        self.controller: KclInstanceController | None = None

    async def bootstrap(self, options: BootstrapOptions) -> None:
        """Load resources into the cluster.

        Sources without an artifact are pointed at the local checkout that
        contains `options.path`.
        """
        _LOGGER.info("Starting bootstrap from path: %s", options.path)
        loader = ResourceLoader()
        root: Path | None = None
        revision = LOCAL_REVISION
        async for doc in loader.load(LoadOptions(path=options.path)):
            if doc["kind"] in SOURCE_KINDS and not (
                (doc.get("status") or {}).get("artifact")
            ):
                if root is None:
                    root, revision = local_revision(Path(options.path))
                doc.setdefault("status", {})["artifact"] = {
                    "url": f"file://{root}",
                    "revision": revision,
                }
                _LOGGER.info(
                    "Bootstrapped %s %s to %s at %s",
                    doc["kind"],
                    doc["metadata"]["name"],
                    root,
                    revision,
                )
            self.cluster.add_object(doc)

    async def start(self) -> None:
        """Start the controller."""
        if self.controller is not None:
            return
        _LOGGER.info("Starting orchestrator")
        self.controller = KclInstanceController(
            self.cluster,
            self.renderer,
            self.fetcher,
            self.config.controller_config,
        )
        self.controller.start()

    async def stop(self) -> None:
        """Stop the controller."""
        if self.controller is None:
            return
        _LOGGER.info("Stopping orchestrator")
        await self.controller.close()
        task_service = get_task_service()
        await task_service.block_till_done()
        await task_service.cancel_background_tasks()
        self.controller = None
        _LOGGER.info("Orchestrator stopped")

    def instances(self) -> list[KclInstance]:
        """Return the parsed KclInstances of the cluster."""
        return [
            KclInstance.parse_doc(obj)
            for obj in self.cluster.list_objects(KCL_INSTANCE_KIND)
        ]

    async def render(self, instance: KclInstance) -> RenderResult:
        """Render an instance without applying it to the cluster."""
        artifact = await SourceWatcher(self.cluster).get_artifact(instance)
        module_path = await self.fetcher.module_path(artifact, instance.path)
        arguments = await resolve_arguments(instance, self.cluster)
        return await self.renderer.render(
            module_path, arguments, RenderOptions.from_config(instance.config)
        )

    def is_complete(self) -> bool:
        """Return True if no work is queued and every instance settled."""
        if self.controller is None or not self.controller.queue.idle:
            return False
        return all(
            is_settled(obj) for obj in self.cluster.list_objects(KCL_INSTANCE_KIND)
        )

    def has_failed_resources(self) -> bool:
        """Return True if any instance is in the Failed phase."""
        return any(
            instance.status.phase == Phase.FAILED for instance in self.instances()
        )

    async def wait_settled(self) -> None:
        """Wait until all instances settled.

        Raises FluxKclException on timeout.
        """
        try:
            async with asyncio.timeout(self.config.settle_timeout):
                # Let the watches replay the existing objects first
                await asyncio.sleep(0)
                while not self.is_complete():
                    await asyncio.sleep(self.config.poll_interval)
        except TimeoutError as err:
            raise FluxKclException(
                f"Instances did not settle within {self.config.settle_timeout}s"
            ) from err

    async def run(self, options: BootstrapOptions) -> bool:
        """Bootstrap, reconcile all instances and stop.

        Returns:
            bool: True if every instance reconciled successfully.
        """
        await self.bootstrap(options)
        await self.start()
        try:
            await self.wait_settled()
        finally:
            await self.stop()
        if self.has_failed_resources():
            _LOGGER.error("One or more instances failed")
            return False
        _LOGGER.info("All instances reconciled")
        return True
