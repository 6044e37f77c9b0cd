"""Flux-kcl build action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from flux_kcl.cluster import InMemoryClusterClient
from flux_kcl.orchestrator import BootstrapOptions, Orchestrator

from . import options
from .format import YamlFormatter

_LOGGER = logging.getLogger(__name__)


class BuildAction:
    """Flux-kcl build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Render KclInstance objects from a local directory",
                description="""Render the KCL module of every KclInstance found
                    in the path and print the resulting manifests, without
                    applying them.""",
            ),
        )
        options.add_controller_flags(args)
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        kcl_bin: str,
        storage_dir: pathlib.Path | None,
        source_host: str | None,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        orchestrator = Orchestrator(
            InMemoryClusterClient(),
            options.orchestrator_config(kcl_bin, storage_dir, source_host),
        )
        await orchestrator.bootstrap(BootstrapOptions(path=path))
        manifests = []
        for instance in orchestrator.instances():
            _LOGGER.info("Rendering KclInstance %s", instance.namespaced_name)
            result = await orchestrator.render(instance)
            manifests.extend(result.manifests)
        with open(output_file, "w") as file:
            YamlFormatter().print(manifests, file=file)
