"""Library for running subprocesses using asyncio and returning the output."""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
DEFAULT_TIMEOUT = 120.0


# No public API
__all__: list[str] = []


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            return f"{path.relative_to(cwd)} (abs)"
    return str(path)


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[Exception] = CommandException
    """Exception to throw in case of an error or timeout."""

    env: dict[str, str] | None = None
    """Extra environment variables for the subprocess."""

    timeout: float = DEFAULT_TIMEOUT
    """Seconds to wait for the command before it is killed."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return shlex.join(self.cmd)

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd = f"({format_path(self.cwd)}) " if self.cwd else ""
        return f"{cwd}{self.string}"

    async def _run(self, stdin: bytes | None) -> bytes:
        _LOGGER.debug("Running command: %s", self)
        env = {**os.environ, **(self.env or {})}
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as err:
            raise self.exc(f"Command '{self}' could not be started: {err}") from err
        try:
            async with asyncio.timeout(self.timeout):
                out, err = await proc.communicate(stdin)
        except TimeoutError as timeout_err:
            proc.kill()
            await proc.wait()
            raise self.exc(
                f"Command '{self}' timed out after {self.timeout}s"
            ) from timeout_err
        if proc.returncode:
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out

    async def run(self, stdin: bytes | None = None) -> str:
        """Run the command, bounded by the process concurrency limit."""
        async with _SEM:
            out = await self._run(stdin)
        return out.decode("utf-8")


async def run(cmd: Command) -> str:
    """Run the specified command and return stdout."""
    return await cmd.run()
