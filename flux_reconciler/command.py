"""Library for issuing commands using asyncio and returning the result.

Used by the collaborators that shell out to external tools, such as the
overlay renderer (`kustomize`) and the decryption provider (`sops`). Commands
have no timeout of their own: they run under the deadline of the
reconciliation attempt and the subprocess is killed when it is cancelled.
"""

import asyncio
import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

# Maximum number of external tools running at once across all units
_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)


# No public API
__all__: list[str] = []


@dataclass
class Command:
    """An external tool invocation."""

    cmd: list[str]
    """Program and arguments, executed without a shell."""

    cwd: Path | None = None
    """Working directory of the subprocess."""

    exc: type[CommandException] = CommandException
    """Exception raised when the program exits with an error."""

    env: dict[str, str] | None = None
    """Variables added to the environment of the controller process."""

    def __str__(self) -> str:
        line = shlex.join(self.cmd)
        return f"({self.cwd}) {line}" if self.cwd else line

    def _failure(self, returncode: int, out: bytes, err: bytes) -> CommandException:
        lines = [f"Command '{self}' failed with return code {returncode}"]
        lines.extend(
            stream.decode("utf-8", errors="replace") for stream in (out, err) if stream
        )
        message = "\n".join(lines)
        _LOGGER.debug(message)
        return self.exc(message)

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the program feeding it `stdin` and return its stdout."""
        _LOGGER.debug("Running command: %s", self)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env={**os.environ, **(self.env or {})},
            )
        except OSError as err:
            raise self.exc(f"Command '{self}' could not be started: {err}") from err
        try:
            out, err = await proc.communicate(stdin)
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        if proc.returncode:
            raise self._failure(proc.returncode, out, err)
        return out


async def run_piped(cmds: Sequence[Command], stdin: bytes | None = None) -> bytes:
    """Run commands piped together, returning the stdout of the last one."""
    async with _SEM:
        out = stdin
        for cmd in cmds:
            out = await cmd.run(out)
    return out or b""


async def run(cmd: Command, stdin: bytes | None = None) -> bytes:
    """Run the command and return its stdout."""
    return await run_piped([cmd], stdin=stdin)
