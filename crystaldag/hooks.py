"""
Pre/post hook execution.

Hooks are short external commands (staging scripts, archivers, notifiers)
run around a job. They run as asyncio subprocesses so a slow hook never
blocks the control loop, and strictly one after another.
"""

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional, Sequence

from .exceptions import HookError
from .models import CommandHook

logger = logging.getLogger(__name__)

# Seconds to wait for a killed hook to be reaped
KILL_WAIT = 5.0


async def _kill(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the hook's whole process group, children included."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_WAIT)
    except asyncio.TimeoutError:
        logger.warning(f"Hook process {process.pid} not reaped {KILL_WAIT}s after SIGKILL")


class HookExecutor:
    """
    Runs CommandHooks and turns failures into HookError.

    Attributes:
        default_timeout: Upper bound for hooks without their own timeout
                         (None = wait indefinitely)
    """

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout

    async def run(self, hook: CommandHook, default_dir: Path) -> int:
        """
        Run one hook to completion.

        Args:
            hook: Hook to run
            default_dir: Directory used when the hook has none of its own
                         (the owning job's working directory)

        Returns:
            The exit code (always 0; any other code raises)

        Raises:
            HookError: The command could not be started, exited non-zero,
                       or exceeded its timeout
        """
        cwd = hook.working_dir or default_dir
        timeout = hook.timeout if hook.timeout is not None else self.default_timeout
        logger.debug(f"Running hook '{hook}' in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *hook.argv(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=os.environ.copy(),
                start_new_session=True,
            )
        except OSError as e:
            raise HookError(
                f"Hook '{hook}' could not be started: {e}", command=str(hook)
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.CancelledError:
            await _kill(process)
            raise
        except asyncio.TimeoutError:
            await _kill(process)
            raise HookError(
                f"Hook '{hook}' timed out after {timeout}s", command=str(hook)
            ) from None

        stderr_text = stderr.decode(errors="replace").strip()
        if process.returncode != 0:
            raise HookError(
                f"Hook '{hook}' exited with code {process.returncode}"
                + (f": {stderr_text}" if stderr_text else ""),
                command=str(hook),
                exit_code=process.returncode,
                stderr_output=stderr_text,
            )

        if stdout:
            logger.debug(f"Hook '{hook}' output: {stdout.decode(errors='replace').strip()}")
        return process.returncode

    async def run_all(self, hooks: Sequence[CommandHook], default_dir: Path) -> None:
        """
        Run hooks in order, stopping at the first failure.

        Raises:
            HookError: From the first hook that fails
        """
        for hook in hooks:
            await self.run(hook, default_dir)

    async def run_collecting(self, hooks: Sequence[CommandHook], default_dir: Path) -> List[str]:
        """
        Run every hook in order, continuing past failures.

        Returns:
            Error messages of the hooks that failed
        """
        errors = []
        for hook in hooks:
            try:
                await self.run(hook, default_dir)
            except HookError as e:
                logger.warning(str(e))
                errors.append(str(e))
        return errors
