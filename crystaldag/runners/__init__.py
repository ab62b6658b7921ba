"""Job execution backends."""

from typing import Callable, Dict, Optional

from ..config import EngineSettings
from ..exceptions import ConfigurationError
from .base import (
    Backend,
    CommandResult,
    JobHandle,
    Monitor,
    PollStatus,
    Runner,
    run_command,
)
from .keyword import KeywordMonitor
from .local import LocalRunner, ProcessMonitor, local_backend
from .pbs import PBS_STATE_MAP, PbsMonitor, pbs_backend
from .scheduler import SchedulerMonitor, SchedulerRunner
from .slurm import SLURM_STATE_MAP, SlurmMonitor, slurm_backend

BACKEND_FACTORIES: Dict[str, Callable[..., Backend]] = {
    "local": local_backend,
    "slurm": slurm_backend,
    "pbs": pbs_backend,
}


def create_backend(
    name: str,
    settings: Optional[EngineSettings] = None,
    keywords: bool = False,
) -> Backend:
    """
    Build a preset backend by name.

    Raises:
        ConfigurationError: Unknown backend name
        BackendUnavailableError: The backend's commands are not installed
    """
    try:
        factory = BACKEND_FACTORIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown backend '{name}'. Available: {', '.join(sorted(BACKEND_FACTORIES))}",
            config_key="backend",
        ) from None
    return factory(settings, keywords=keywords)


__all__ = [
    # Interfaces and values
    "Backend",
    "CommandResult",
    "JobHandle",
    "Monitor",
    "PollStatus",
    "Runner",
    "run_command",
    # Local
    "LocalRunner",
    "ProcessMonitor",
    "local_backend",
    # Schedulers
    "SchedulerRunner",
    "SchedulerMonitor",
    "SlurmMonitor",
    "SLURM_STATE_MAP",
    "slurm_backend",
    "PbsMonitor",
    "PBS_STATE_MAP",
    "pbs_backend",
    # Output keywords
    "KeywordMonitor",
    # Registry
    "BACKEND_FACTORIES",
    "create_backend",
]
