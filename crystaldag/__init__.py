"""
crystaldag: dependency-graph execution of long-running simulation jobs.

Jobs are described once, wired into a validated graph, and executed by an
Orchestrator that submits each job to a backend (local processes, SLURM or
PBS) as soon as its parents have succeeded, after copying the parent's
continuation artifact into the child's working directory.
"""

from crystaldag.config import EngineSettings, load_settings
from crystaldag.events import (
    EventStream,
    JobStatusChanged,
    RunEvent,
    RunFinished,
    RunStarted,
    ShutdownRequested,
)
from crystaldag.exceptions import (
    BackendUnavailableError,
    CancelError,
    ConfigurationError,
    CrystalDagError,
    DanglingContinuationError,
    DuplicateIdError,
    GraphError,
    GraphFrozenError,
    HookError,
    InvalidTransitionError,
    RunnerError,
    SourceArtifactMissingError,
    StatusError,
    SubmitError,
    TransformError,
    UnknownJobError,
    WouldCycleError,
    WriteFailureError,
)
from crystaldag.graph import GraphBuilder, JobGraph
from crystaldag.hooks import HookExecutor
from crystaldag.models import (
    CommandHook,
    CommandSpec,
    DependencyEdge,
    Job,
    JobEvent,
    JobId,
    JobOutcome,
    JobStatus,
    RunReport,
    TransformContext,
    advance,
    new_job_id,
)
from crystaldag.orchestrator import Orchestrator
from crystaldag.runners import (
    Backend,
    JobHandle,
    KeywordMonitor,
    LocalRunner,
    Monitor,
    PollStatus,
    ProcessMonitor,
    Runner,
    create_backend,
    local_backend,
    pbs_backend,
    slurm_backend,
)
from crystaldag.shutdown import ShutdownCoordinator
from crystaldag.transform import ArtifactTransformer
from crystaldag.workflow_file import Workflow, load_workflow

__version__ = "0.1.0"
__all__ = [
    # Model
    "CommandHook",
    "CommandSpec",
    "DependencyEdge",
    "Job",
    "JobEvent",
    "JobId",
    "JobOutcome",
    "JobStatus",
    "RunReport",
    "TransformContext",
    "advance",
    "new_job_id",
    "GraphBuilder",
    "JobGraph",
    # Execution
    "ArtifactTransformer",
    "HookExecutor",
    "Orchestrator",
    "ShutdownCoordinator",
    "Backend",
    "JobHandle",
    "KeywordMonitor",
    "LocalRunner",
    "Monitor",
    "PollStatus",
    "ProcessMonitor",
    "Runner",
    "create_backend",
    "local_backend",
    "pbs_backend",
    "slurm_backend",
    # Events
    "EventStream",
    "JobStatusChanged",
    "RunEvent",
    "RunFinished",
    "RunStarted",
    "ShutdownRequested",
    # Configuration
    "EngineSettings",
    "load_settings",
    "Workflow",
    "load_workflow",
    # Errors
    "BackendUnavailableError",
    "CancelError",
    "ConfigurationError",
    "CrystalDagError",
    "DanglingContinuationError",
    "DuplicateIdError",
    "GraphError",
    "GraphFrozenError",
    "HookError",
    "InvalidTransitionError",
    "RunnerError",
    "SourceArtifactMissingError",
    "StatusError",
    "SubmitError",
    "TransformError",
    "UnknownJobError",
    "WouldCycleError",
    "WriteFailureError",
]
