"""Test helpers for flux-kcl tools."""

import sys

from flux_kcl.command import Command, run

FLUX_KCL_CMD = [sys.executable, "-m", "flux_kcl"]


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command(FLUX_KCL_CMD + args, env=env))
