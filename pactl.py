#!/usr/bin/env python3
"""
Control channel - the single primitive every pactl/arecord call goes through.

All text-protocol traffic with the audio server funnels through run_cmd(),
so tests can substitute any callable with the same signature and feed
canned transcripts instead of talking to a live server.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# Seconds before a hung pactl call is treated as a failure
COMMAND_TIMEOUT = 5


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""
    succeeded: bool
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[..., CommandResult]


def run_cmd(*args) -> CommandResult:
    """Run a command safely. Never raises; failures come back as succeeded=False."""
    logger.debug("exec: %s", " ".join(args))
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.warning("Command %s could not be run: %s", args[0] if args else "?", e)
        return CommandResult(False)

    if result.returncode != 0:
        logger.debug("exit %d: %s", result.returncode, (result.stderr or "").strip())
        return CommandResult(False, result.stdout or "", result.stderr or "")
    return CommandResult(True, result.stdout or "", result.stderr or "")


def pactl(runner: CommandRunner, *args) -> str:
    """Run a pactl subcommand and return stdout, or "" on failure."""
    result = runner('pactl', *args)
    return result.stdout if result.succeeded else ""


def load_module(runner: CommandRunner, module: str, *args) -> int | None:
    """Load a server module. Returns the new module id, or None on failure.

    The server only acknowledges success by printing the module index, so a
    zero exit status with non-numeric output still counts as a failure.
    """
    result = runner('pactl', 'load-module', module, *args)
    if not result.succeeded:
        logger.warning("load-module %s failed: %s", module, result.stderr.strip())
        return None
    output = result.stdout.strip()
    if not output.isdigit():
        logger.warning("load-module %s returned no module id (%r)", module, output)
        return None
    return int(output)


def unload_module(runner: CommandRunner, module_id: int) -> bool:
    """Unload a module. Absence is tolerated: the module may already be gone."""
    result = runner('pactl', 'unload-module', str(module_id))
    if not result.succeeded:
        logger.debug("unload-module %s ignored: %s", module_id, result.stderr.strip())
    return result.succeeded
