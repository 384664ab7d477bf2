"""Test helpers for flux-reconciler tools."""

import sys

from flux_reconciler.command import Command, run

FLUX_RECONCILER_CMD = [sys.executable, "-m", "flux_reconciler"]


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    result = await run(Command(FLUX_RECONCILER_CMD + args, env=env))
    return result.decode("utf-8")
