"""Thin wrapper around subprocess used by every external command."""

import logging
import subprocess
from typing import List

logger = logging.getLogger(__name__)

# Flags that only read state; they still run under --dry-run.
READ_ONLY_MARKERS = ('-S', '-C', '--list-rules', '--check')


def is_read_only(cmd: List[str]) -> bool:
    if cmd and cmd[0].endswith('-save'):
        return True
    return any(x in cmd for x in READ_ONLY_MARKERS)


def run_command(
    cmd: List[str],
    check: bool = True,
    dry_run: bool = False
) -> subprocess.CompletedProcess:
    """
    Execute a command.

    Args:
        cmd: Command and arguments.
        check: Whether to raise exception on non-zero exit code.
        dry_run: Log mutating commands instead of running them.

    Returns:
        CompletedProcess result.

    Raises:
        subprocess.CalledProcessError: non-zero exit with ``check=True``.
        FileNotFoundError: the executable is not installed.
    """
    cmd_str = ' '.join(cmd)
    logger.debug(f"Executing: {cmd_str}")

    if dry_run and not is_read_only(cmd):
        logger.info(f"[DRY RUN] Would execute: {cmd_str}")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check
        )
        if result.stdout:
            logger.debug(f"STDOUT: {result.stdout.strip()}")
        if result.stderr:
            logger.debug(f"STDERR: {result.stderr.strip()}")
        return result
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed: {cmd_str}")
        logger.error(f"Exit code: {e.returncode}")
        logger.error(f"STDOUT: {e.stdout}")
        logger.error(f"STDERR: {e.stderr}")
        raise
