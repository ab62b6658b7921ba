"""
Local execution backend.

Jobs run as asyncio subprocesses on this machine, each in its own session so
that cancellation reaches the whole process group (MPI launchers, wrapper
scripts and the binaries they spawn). CRYSTAL-style invocation is supported
through CommandSpec.stdin/stdout:

    crystalOMP < mgo.d12 > mgo.out
"""

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import Dict, Optional

from ..config import EngineSettings
from ..exceptions import CancelError, StatusError, SubmitError
from ..models import Job
from .base import Backend, JobHandle, Monitor, PollStatus, Runner
from .keyword import KeywordMonitor

logger = logging.getLogger(__name__)


class LocalRunner(Runner):
    """
    Runs jobs as local subprocesses.

    Standard output (and standard error) go to CommandSpec.stdout if given,
    otherwise to ``<seed><output_extension>`` in the working directory.

    Attributes:
        settings: Engine settings (submit timeout, cancel grace period, ...)
    """

    name = "local"

    def __init__(self, settings: Optional[EngineSettings] = None):
        super().__init__(settings)
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    def output_path(self, job: Job) -> Path:
        if job.command.stdout:
            return job.working_dir / job.command.stdout
        return job.artifact(self.settings.output_extension)

    async def submit(self, job: Job) -> JobHandle:
        """
        Start the job's command in its working directory.

        Raises:
            SubmitError: Working directory or stdin file missing, or the
                         executable could not be started
        """
        work_dir = job.working_dir
        if not work_dir.is_dir():
            raise SubmitError(f"Working directory does not exist: {work_dir}", job_id=job.id)

        command = job.command
        env = os.environ.copy()
        env.update(command.env)

        stdin_file = None
        output_file = self.output_path(job)
        try:
            if command.stdin:
                stdin_file = open(work_dir / command.stdin, "rb")
            with open(output_file, "wb") as stdout_file:
                process = await asyncio.wait_for(
                    asyncio.create_subprocess_exec(
                        *command.argv(),
                        stdin=stdin_file if stdin_file else asyncio.subprocess.DEVNULL,
                        stdout=stdout_file,
                        stderr=asyncio.subprocess.STDOUT,
                        cwd=str(work_dir),
                        env=env,
                        start_new_session=True,
                    ),
                    timeout=self.settings.submit_timeout,
                )
        except asyncio.TimeoutError:
            raise SubmitError(
                f"Starting {command.program} for {job.label} timed out", job_id=job.id
            ) from None
        except OSError as e:
            raise SubmitError(
                f"Failed to start {command.program} for {job.label}: {e}",
                job_id=job.id,
                stderr_output=str(e),
            ) from e
        finally:
            # The child holds its own descriptors now
            if stdin_file is not None:
                stdin_file.close()

        handle = JobHandle(
            backend=self.name,
            native_id=str(process.pid),
            job_id=job.id,
            working_dir=work_dir,
            output_file=output_file,
        )
        self._processes[handle.native_id] = process
        logger.info(f"Started {job.label} as local process {process.pid}")
        return handle

    def returncode(self, handle: JobHandle) -> Optional[int]:
        """Exit code of the process behind ``handle`` (None while alive)."""
        process = self._processes.get(handle.native_id)
        if process is None:
            raise StatusError(f"No local process tracked for {handle}", handle=handle)
        return process.returncode

    def release(self, handle: JobHandle) -> None:
        self._processes.pop(handle.native_id, None)

    async def cancel(self, handle: JobHandle) -> None:
        """
        Interrupt the process group, then kill it after the grace period.

        Cancelling a process that already exited is a no-op.

        Raises:
            CancelError: Unknown handle, or the signal could not be delivered
        """
        process = self._processes.get(handle.native_id)
        if process is None:
            raise CancelError(
                f"No local process tracked for {handle}", handle=handle, reason="unknown handle"
            )
        if process.returncode is not None:
            return

        try:
            os.killpg(process.pid, signal.SIGINT)
        except ProcessLookupError:
            return
        except PermissionError as e:
            raise CancelError(
                f"Cannot signal process group {process.pid}: {e}",
                handle=handle,
                reason="permission denied",
            ) from e

        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.cancel_grace_period)
        except asyncio.CancelledError:
            # Caller gave up waiting (shutdown grace window); still force the kill
            logger.warning(f"Cancel of process {process.pid} interrupted, sending SIGKILL")
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            raise
        except asyncio.TimeoutError:
            logger.warning(
                f"Process {process.pid} ignored SIGINT for "
                f"{self.settings.cancel_grace_period}s, sending SIGKILL"
            )
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()

        logger.info(f"Cancelled local process {process.pid} (exit code {process.returncode})")


class ProcessMonitor(Monitor):
    """Reports liveness and exit status of LocalRunner processes."""

    def __init__(self, runner: LocalRunner, settings: Optional[EngineSettings] = None):
        super().__init__(settings or runner.settings)
        self.runner = runner

    async def poll(self, handle: JobHandle) -> PollStatus:
        code = self.runner.returncode(handle)
        if code is None:
            return PollStatus.RUNNING
        if code == 0:
            return PollStatus.SUCCEEDED
        logger.debug(f"Local process {handle.native_id} exited with code {code}")
        return PollStatus.FAILED

    def forget(self, handle: JobHandle) -> None:
        self.runner.release(handle)


def local_backend(settings: Optional[EngineSettings] = None, keywords: bool = False) -> Backend:
    """
    The default local backend.

    Args:
        settings: Engine settings
        keywords: Refine exit-code verdicts with output-listing keywords
    """
    runner = LocalRunner(settings)
    monitor: Monitor = ProcessMonitor(runner)
    if keywords:
        monitor = KeywordMonitor(inner=monitor)
    return Backend(name=runner.name, runner=runner, monitor=monitor)
