"""Command line tool for rendering and reconciling KclInstance objects."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from flux_kcl.exceptions import FluxKclException
from flux_kcl.task import task_service_context
from . import build, reconcile

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for KCL instances in a flux repository.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    build.BuildAction.register(subparsers)
    reconcile.ReconcileAction.register(subparsers)
    return parser


async def _run_action(action: Any, args: argparse.Namespace) -> None:
    with task_service_context():
        await action.run(**vars(args))


def main(argv: list[str] | None = None) -> None:
    """Flux-kcl command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect.

        See https://github.com/yaml/pyyaml/issues/240
        """
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(_run_action(action, args))
    except FluxKclException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("flux-kcl error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
