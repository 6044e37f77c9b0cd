"""Tests for command library."""

from pathlib import Path

import pytest

from flux_kcl.command import Command, run
from flux_kcl.exceptions import CommandException, RenderError


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_command_cwd(tmp_path: Path) -> None:
    """Test running a command in a working directory."""
    result = await run(Command(["pwd"], cwd=tmp_path))
    assert Path(result.strip()).resolve() == tmp_path.resolve()


async def test_command_env() -> None:
    """Test extra environment variables are passed to the command."""
    result = await run(Command(["sh", "-c", "echo $GREETING"], env={"GREETING": "hi"}))
    assert result == "hi\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_custom_exception() -> None:
    """Test a failing command raises the requested exception with stderr."""
    with pytest.raises(RenderError, match="boom"):
        await run(Command(["sh", "-c", "echo boom >&2; exit 2"], exc=RenderError))


async def test_missing_command() -> None:
    """Test a command that cannot be started."""
    with pytest.raises(CommandException, match="could not be started"):
        await run(Command(["/does/not/exist"]))


async def test_command_timeout() -> None:
    """Test a command that runs past its timeout is killed."""
    with pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "10"], timeout=0.2))


def test_command_string() -> None:
    """Test the debug string of a command quotes its arguments."""
    assert Command(["kcl", "run", "-D", "a=b c"]).string == "kcl run -D 'a=b c'"
