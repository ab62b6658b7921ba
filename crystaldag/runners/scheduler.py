"""
Batch-scheduler backends driven by opaque command templates.

A scheduler backend knows three commands: one that submits a script and
prints a job id, one that reports a job's state, and one that cancels it.
Templates are argument lists whose tokens may reference ``{job_id}``,
``{working_dir}`` and ``{seed}``; the job's own CommandSpec (normally the
batch script and its arguments) is appended to the submit command.

    runner = SchedulerRunner(
        "slurm",
        submit_command=["sbatch"],
        cancel_command=["scancel", "{job_id}"],
        job_id_pattern=r"Submitted batch job (\\d+)",
    )

Preset backends for SLURM and PBS live in slurm.py and pbs.py.
"""

import asyncio
import logging
import re
import shutil
from typing import Dict, List, Mapping, Optional, Pattern, Sequence

from ..config import EngineSettings
from ..exceptions import BackendUnavailableError, CancelError, StatusError, SubmitError
from ..models import Job
from .base import CommandResult, JobHandle, Monitor, PollStatus, Runner, run_command

logger = logging.getLogger(__name__)


def render_command(template: Sequence[str], **values: str) -> List[str]:
    """Substitute ``{name}`` placeholders in every token of ``template``."""
    return [token.format(**values) for token in template]


def require_programs(backend: str, *templates: Sequence[str]) -> None:
    """
    Check that the program of every command template is on PATH.

    Raises:
        BackendUnavailableError: For the first program that is missing
    """
    for template in templates:
        if not template:
            continue
        program = template[0]
        if shutil.which(program) is None:
            raise BackendUnavailableError(
                f"{backend} backend unavailable: '{program}' not found on PATH",
                backend=backend,
                missing=program,
            )


class SchedulerRunner(Runner):
    """
    Submits and cancels jobs through scheduler CLI commands.

    Attributes:
        name: Backend name put into handles
        submit_command: Submit template; the job's command argv is appended
        cancel_command: Cancel template
        job_id_pattern: Regex whose first group (or whole match) is the job id
        already_gone_pattern: Regex on cancel stderr meaning the job no
                              longer exists (treated as a confirmed cancel)
    """

    def __init__(
        self,
        name: str,
        submit_command: Sequence[str],
        cancel_command: Sequence[str],
        job_id_pattern: str = r"(\d+)",
        already_gone_pattern: Optional[str] = None,
        settings: Optional[EngineSettings] = None,
        check_available: bool = True,
    ):
        super().__init__(settings)
        self.name = name
        self.submit_command = list(submit_command)
        self.cancel_command = list(cancel_command)
        self.job_id_pattern: Pattern[str] = re.compile(job_id_pattern)
        self.already_gone_pattern: Optional[Pattern[str]] = (
            re.compile(already_gone_pattern) if already_gone_pattern else None
        )
        if check_available:
            require_programs(name, self.submit_command, self.cancel_command)

    def output_path(self, job: Job):
        if job.command.stdout:
            return job.working_dir / job.command.stdout
        return job.artifact(self.settings.output_extension)

    def _parse_job_id(self, output: str) -> Optional[str]:
        """Extract the scheduler job id from submit output."""
        match = self.job_id_pattern.search(output)
        if not match:
            return None
        return match.group(1) if match.groups() else match.group(0)

    async def submit(self, job: Job) -> JobHandle:
        """
        Run the submit command in the job's working directory.

        Raises:
            SubmitError: Command missing, timed out, non-zero exit, or no
                         job id in its output
        """
        argv = render_command(
            self.submit_command,
            working_dir=str(job.working_dir),
            seed=job.seed_name,
            job_id="",
        ) + job.command.argv()

        try:
            result = await run_command(
                argv,
                timeout=self.settings.submit_timeout,
                cwd=job.working_dir,
                env=job.command.env,
            )
        except asyncio.TimeoutError:
            raise SubmitError(
                f"{argv[0]} timed out after {self.settings.submit_timeout}s for {job.label}",
                job_id=job.id,
            ) from None
        except OSError as e:
            raise SubmitError(
                f"Failed to run {argv[0]} for {job.label}: {e}", job_id=job.id
            ) from e

        if result.exit_status != 0:
            raise SubmitError(
                f"{argv[0]} failed for {job.label} (exit {result.exit_status}): "
                f"{result.stderr.strip()}",
                job_id=job.id,
                exit_code=result.exit_status,
                stderr_output=result.stderr,
            )

        native_id = self._parse_job_id(result.stdout)
        if not native_id:
            raise SubmitError(
                f"Could not parse job ID from {argv[0]} output: {result.stdout.strip()!r}",
                job_id=job.id,
                exit_code=result.exit_status,
                stderr_output=result.stderr,
            )

        logger.info(f"Submitted {job.label} to {self.name} as job {native_id}")
        return JobHandle(
            backend=self.name,
            native_id=native_id,
            job_id=job.id,
            working_dir=job.working_dir,
            output_file=self.output_path(job),
        )

    async def cancel(self, handle: JobHandle) -> None:
        """
        Run the cancel command for ``handle``.

        Raises:
            CancelError: The command failed for a reason other than the job
                         already being gone
        """
        argv = render_command(
            self.cancel_command,
            job_id=handle.native_id,
            working_dir=str(handle.working_dir),
            seed="",
        )
        try:
            result = await run_command(argv, timeout=self.settings.submit_timeout)
        except asyncio.TimeoutError:
            raise CancelError(
                f"{argv[0]} timed out for {handle}", handle=handle, reason="timeout"
            ) from None
        except OSError as e:
            raise CancelError(
                f"Failed to run {argv[0]} for {handle}: {e}", handle=handle, reason=str(e)
            ) from e

        if result.exit_status != 0:
            if self.already_gone_pattern and self.already_gone_pattern.search(result.stderr):
                logger.debug(f"{handle} already finished, nothing to cancel")
                return
            raise CancelError(
                f"{argv[0]} failed for {handle}: {result.stderr.strip()}",
                handle=handle,
                reason=result.stderr.strip(),
            )

        logger.info(f"Cancelled {self.name} job {handle.native_id}")


class SchedulerMonitor(Monitor):
    """
    Polls a scheduler status command and maps its state token.

    Subclasses with more involved output override query_state(); the base
    implementation runs ``status_command`` and takes the first
    ``state_pattern`` match (group 1 if the pattern has groups).

    A token that is absent or not in ``state_map`` raises StatusError, which
    the orchestrator counts as an unknown poll.

    Attributes:
        name: Backend name, for messages
        status_command: Status template
        state_map: Upper-case state token -> PollStatus
        state_pattern: Regex locating the state token in the output
    """

    def __init__(
        self,
        name: str,
        status_command: Sequence[str],
        state_map: Mapping[str, PollStatus],
        state_pattern: str = r"^\s*(\S+)",
        settings: Optional[EngineSettings] = None,
        check_available: bool = True,
    ):
        super().__init__(settings)
        self.name = name
        self.status_command = list(status_command)
        self.state_map: Dict[str, PollStatus] = {k.upper(): v for k, v in state_map.items()}
        self.state_pattern: Pattern[str] = re.compile(state_pattern, re.MULTILINE)
        if check_available:
            require_programs(name, self.status_command)

    async def _run(self, template: Sequence[str], handle: JobHandle) -> CommandResult:
        argv = render_command(
            template,
            job_id=handle.native_id,
            working_dir=str(handle.working_dir),
            seed="",
        )
        try:
            return await run_command(argv, timeout=self.settings.poll_timeout)
        except asyncio.TimeoutError:
            raise StatusError(f"{argv[0]} timed out for {handle}", handle=handle) from None
        except OSError as e:
            raise StatusError(f"Failed to run {argv[0]} for {handle}: {e}", handle=handle) from e

    def _extract(self, output: str) -> Optional[str]:
        match = self.state_pattern.search(output)
        if not match:
            return None
        return match.group(1) if match.groups() else match.group(0)

    async def query_state(self, handle: JobHandle) -> Optional[str]:
        """Return the raw state token for ``handle``, or None if unavailable."""
        result = await self._run(self.status_command, handle)
        if result.exit_status != 0:
            return None
        return self._extract(result.stdout)

    def parse_state(self, token: str) -> Optional[PollStatus]:
        """Map a raw state token; None if the token is not recognised."""
        # sacct reports e.g. "CANCELLED by 1234"
        words = token.strip().upper().split()
        if not words:
            return None
        return self.state_map.get(words[0])

    async def poll(self, handle: JobHandle) -> PollStatus:
        token = await self.query_state(handle)
        if token is None:
            raise StatusError(f"{self.name} reported no state for {handle}", handle=handle)
        status = self.parse_state(token)
        if status is None:
            raise StatusError(f"Unrecognised {self.name} state '{token}' for {handle}", handle=handle)
        return status
