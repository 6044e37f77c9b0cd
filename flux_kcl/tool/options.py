"""Command line flags shared by the flux-kcl actions."""

from argparse import ArgumentParser
import os
import pathlib

from flux_kcl.kcl_controller import KclControllerConfig
from flux_kcl.orchestrator import OrchestratorConfig
from flux_kcl.source_controller import FetcherConfig

STORAGE_DIR_ENV = "KCL_STORAGE_DIR"
SOURCE_HOST_ENV = "SOURCE_HOST"


def add_controller_flags(args: ArgumentParser) -> None:
    """Add the flags configuring rendering and source fetching."""
    args.add_argument(
        "path",
        type=pathlib.Path,
        help="Path to a file or directory with KclInstance and Source objects",
    )
    args.add_argument(
        "--kcl-bin",
        default="kcl",
        help="The kcl executable used to render modules",
    )
    args.add_argument(
        "--storage-dir",
        type=pathlib.Path,
        default=os.environ.get(STORAGE_DIR_ENV),
        help=f"Cache directory for source artifacts (env {STORAGE_DIR_ENV})",
    )
    args.add_argument(
        "--source-host",
        default=os.environ.get(SOURCE_HOST_ENV),
        help="Replaces the scheme and host of artifact URLs, e.g. a port-forward "
        f"to the source-controller (env {SOURCE_HOST_ENV})",
    )


def orchestrator_config(
    kcl_bin: str,
    storage_dir: pathlib.Path | str | None,
    source_host: str | None,
    workers: int = 4,
) -> OrchestratorConfig:
    """Build the orchestrator configuration from the command line flags."""
    return OrchestratorConfig(
        kcl_bin=kcl_bin,
        controller_config=KclControllerConfig(workers=workers),
        fetcher_config=FetcherConfig(
            storage_dir=pathlib.Path(storage_dir) if storage_dir else None,
            source_host=source_host,
        ),
    )
