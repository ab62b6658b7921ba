"""
PBS / Torque backend preset.

``qsub`` prints the job id (``1234.server``), ``qstat -x -f`` reports both
queued and finished jobs as ``key = value`` blocks, ``qdel`` cancels.
"""

import logging
import re
from typing import Dict, Optional

from ..config import EngineSettings
from .base import Backend, JobHandle, PollStatus
from .keyword import KeywordMonitor
from .scheduler import SchedulerMonitor, SchedulerRunner

logger = logging.getLogger(__name__)

# Synthetic tokens for finished jobs, chosen by exit status
FINISHED_OK = "DONE"
FINISHED_ERROR = "EXITED"

PBS_STATE_MAP = {
    "Q": PollStatus.RUNNING,   # queued
    "H": PollStatus.RUNNING,   # held
    "W": PollStatus.RUNNING,   # waiting for start time
    "T": PollStatus.RUNNING,   # in transit
    "R": PollStatus.RUNNING,
    "E": PollStatus.RUNNING,   # exiting, accounting not final yet
    "S": PollStatus.RUNNING,   # suspended
    "U": PollStatus.RUNNING,   # suspended, workstation busy
    "B": PollStatus.RUNNING,   # array job begun
    "M": PollStatus.RUNNING,   # moved to another server
    FINISHED_OK: PollStatus.SUCCEEDED,
    FINISHED_ERROR: PollStatus.FAILED,
}

_ATTRIBUTE = re.compile(r"^\s*([A-Za-z_.]+)\s*=\s*(.*?)\s*$")


def parse_qstat_full(output: str) -> Dict[str, str]:
    """Parse ``qstat -f`` output into a flat attribute dict."""
    attributes: Dict[str, str] = {}
    for line in output.splitlines():
        match = _ATTRIBUTE.match(line)
        if match:
            attributes[match.group(1)] = match.group(2)
    return attributes


class PbsMonitor(SchedulerMonitor):
    """Maps job_state, resolving finished jobs (F, C) by Exit_status."""

    def __init__(self, settings: Optional[EngineSettings] = None, check_available: bool = True):
        super().__init__(
            "pbs",
            status_command=["qstat", "-x", "-f", "{job_id}"],
            state_map=PBS_STATE_MAP,
            settings=settings,
            check_available=check_available,
        )

    async def query_state(self, handle: JobHandle) -> Optional[str]:
        result = await self._run(self.status_command, handle)
        if result.exit_status != 0:
            return None

        attributes = parse_qstat_full(result.stdout)
        state = attributes.get("job_state", "").upper()
        if state not in ("F", "C"):
            return state or None

        exit_status = attributes.get("Exit_status", attributes.get("exit_status"))
        if exit_status is None:
            logger.debug(f"pbs job {handle.native_id} finished without an Exit_status yet")
            return None
        try:
            return FINISHED_OK if int(exit_status) == 0 else FINISHED_ERROR
        except ValueError:
            return None


def pbs_backend(
    settings: Optional[EngineSettings] = None,
    keywords: bool = False,
    check_available: bool = True,
) -> Backend:
    """
    PBS backend.

    Raises:
        BackendUnavailableError: qsub, qstat or qdel is missing
    """
    runner = SchedulerRunner(
        "pbs",
        submit_command=["qsub"],
        cancel_command=["qdel", "{job_id}"],
        job_id_pattern=r"^\s*(\S+)",
        already_gone_pattern=r"Unknown Job Id|Job has finished|invalid state for job",
        settings=settings,
        check_available=check_available,
    )
    monitor = PbsMonitor(settings=runner.settings, check_available=check_available)
    if keywords:
        monitor = KeywordMonitor(inner=monitor)
    return Backend(name="pbs", runner=runner, monitor=monitor)
