"""
SLURM backend preset.

Submission uses ``sbatch`` run in the job's working directory; the job's
CommandSpec is the batch script (plus arguments). Status comes from
``squeue`` while the job is queued or running and from ``sacct`` once it
has left the queue.
"""

import logging
from typing import Optional

from ..config import EngineSettings
from .base import Backend, JobHandle, PollStatus
from .keyword import KeywordMonitor
from .scheduler import SchedulerMonitor, SchedulerRunner, require_programs

logger = logging.getLogger(__name__)


SLURM_STATE_MAP = {
    "PENDING": PollStatus.RUNNING,
    "PD": PollStatus.RUNNING,
    "CONFIGURING": PollStatus.RUNNING,
    "CF": PollStatus.RUNNING,
    "RUNNING": PollStatus.RUNNING,
    "R": PollStatus.RUNNING,
    "COMPLETING": PollStatus.RUNNING,
    "CG": PollStatus.RUNNING,
    "SUSPENDED": PollStatus.RUNNING,
    "S": PollStatus.RUNNING,
    "REQUEUED": PollStatus.RUNNING,
    "RQ": PollStatus.RUNNING,
    "RESIZING": PollStatus.RUNNING,
    "COMPLETED": PollStatus.SUCCEEDED,
    "CD": PollStatus.SUCCEEDED,
    "FAILED": PollStatus.FAILED,
    "F": PollStatus.FAILED,
    "CANCELLED": PollStatus.FAILED,
    "CA": PollStatus.FAILED,
    "TIMEOUT": PollStatus.FAILED,
    "TO": PollStatus.FAILED,
    "NODE_FAIL": PollStatus.FAILED,
    "NF": PollStatus.FAILED,
    "OUT_OF_MEMORY": PollStatus.FAILED,
    "OOM": PollStatus.FAILED,
    "BOOT_FAIL": PollStatus.FAILED,
    "BF": PollStatus.FAILED,
    "DEADLINE": PollStatus.FAILED,
    "DL": PollStatus.FAILED,
    "PREEMPTED": PollStatus.FAILED,
    "PR": PollStatus.FAILED,
}


class SlurmMonitor(SchedulerMonitor):
    """squeue first, sacct for jobs that have left the queue."""

    def __init__(self, settings: Optional[EngineSettings] = None, check_available: bool = True):
        super().__init__(
            "slurm",
            status_command=["squeue", "-j", "{job_id}", "-h", "-o", "%T|%r"],
            state_map=SLURM_STATE_MAP,
            settings=settings,
            check_available=check_available,
        )
        self.history_command = ["sacct", "-j", "{job_id}", "-n", "-o", "State", "-P"]
        if check_available:
            require_programs("slurm", self.history_command)

    async def query_state(self, handle: JobHandle) -> Optional[str]:
        result = await self._run(self.status_command, handle)
        output = result.stdout.strip()
        if result.exit_status == 0 and output:
            state, _, reason = output.splitlines()[0].partition("|")
            if reason and reason.strip() not in ("None", "(null)"):
                logger.debug(f"slurm job {handle.native_id}: {state} ({reason.strip()})")
            return state

        # Job not in queue, check accounting
        history = await self._run(self.history_command, handle)
        lines = [line for line in history.stdout.splitlines() if line.strip()]
        if history.exit_status == 0 and lines:
            # First line is the job allocation itself, later lines are steps
            return lines[0]
        return None


def slurm_backend(
    settings: Optional[EngineSettings] = None,
    keywords: bool = False,
    check_available: bool = True,
) -> Backend:
    """
    SLURM backend.

    Args:
        settings: Engine settings
        keywords: Refine terminal verdicts with the output-keyword monitor
        check_available: Verify sbatch/squeue/sacct/scancel are on PATH

    Raises:
        BackendUnavailableError: A SLURM command is missing
    """
    runner = SchedulerRunner(
        "slurm",
        submit_command=["sbatch"],
        cancel_command=["scancel", "{job_id}"],
        job_id_pattern=r"Submitted batch job (\d+)",
        already_gone_pattern=r"already completing or completed|Invalid job id",
        settings=settings,
        check_available=check_available,
    )
    monitor = SlurmMonitor(settings=runner.settings, check_available=check_available)
    if keywords:
        monitor = KeywordMonitor(inner=monitor)
    return Backend(name="slurm", runner=runner, monitor=monitor)
