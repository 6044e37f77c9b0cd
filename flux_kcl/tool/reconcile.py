"""Flux-kcl reconcile action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
import sys
from typing import Any, cast

from flux_kcl.cluster import InMemoryClusterClient
from flux_kcl.manifest import KclInstance
from flux_kcl.orchestrator import BootstrapOptions, Orchestrator
from flux_kcl.status import READY_CONDITION, Phase

from . import options
from .format import JsonFormatter, PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)

STATUS_COLUMNS = ["namespace", "name", "phase", "revision", "resources", "message"]


def _status_row(instance: KclInstance) -> dict[str, Any]:
    status = instance.status
    ready = status.get_condition(READY_CONDITION)
    return {
        "namespace": instance.namespace,
        "name": instance.name,
        "phase": status.phase or Phase.PENDING.value,
        "revision": status.last_applied_revision or "",
        "resources": len(status.inventory),
        "message": ready.message if ready else "",
    }


class ReconcileAction:
    """Flux-kcl reconcile action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile KclInstance objects against an in-memory cluster",
                description="""Run the KclInstance controller against an
                    in-memory cluster loaded from the path, then print the
                    status and inventory of every instance.""",
            ),
        )
        options.add_controller_flags(args)
        args.add_argument(
            "--workers",
            type=int,
            default=4,
            help="Number of instances reconciled concurrently",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        kcl_bin: str,
        storage_dir: pathlib.Path | None,
        source_host: str | None,
        workers: int,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        cluster = InMemoryClusterClient()
        orchestrator = Orchestrator(
            cluster,
            options.orchestrator_config(kcl_bin, storage_dir, source_host, workers),
        )
        success = await orchestrator.run(BootstrapOptions(path=path))
        instances = orchestrator.instances()
        if output == "table":
            PrintFormatter(STATUS_COLUMNS).print(
                [_status_row(instance) for instance in instances]
            )
        else:
            data = [
                {
                    "name": instance.name,
                    "namespace": instance.namespace,
                    "status": instance.status.to_dict(),
                }
                for instance in instances
            ]
            if output == "yaml":
                YamlFormatter().print(data)
            else:
                JsonFormatter().print(data)
        if not success:
            sys.exit(1)
