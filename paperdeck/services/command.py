"""Async subprocess runner for the encoder and prober binaries."""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from paperdeck.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    stdout: str
    stderr: str


async def run_command(
    args: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None
) -> CommandResult:
    """
    Run a command, capturing stdout/stderr.

    Raises CommandError on a non-zero exit (message built from stderr, or
    stdout when stderr is empty), when the binary cannot be started, or when
    the timeout expires (the process is killed first).
    """
    display = shlex.join(str(arg) for arg in args)
    logger.debug(f"Running: {display}")

    try:
        process = await asyncio.create_subprocess_exec(
            *[str(arg) for arg in args],
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise CommandError(display, -1, stderr=f"could not start {args[0]}: {e.strerror or e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandError(display, -1, stderr=f"timed out after {timeout:.0f}s")

    result = CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace")
    )
    if process.returncode != 0:
        logger.error(f"Command exited with {process.returncode}: {args[0]}")
        raise CommandError(display, process.returncode, stderr=result.stderr, stdout=result.stdout)
    return result
