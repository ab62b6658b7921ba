"""
Graph execution.

The Orchestrator walks a frozen JobGraph and drives every job through its
lifecycle. One control loop owns the status map; everything else (launch
tasks running hooks, transformation and submission, one monitor task per
running handle) reports back through an asyncio.Queue, so the status map is
only ever written by the loop.

    PENDING --admit--> READY --launch task--> RUNNING --monitor task--> terminal

Failure handling: a job that fails (pre-hook, transformation, submission or
the computation itself) marks all its not-started descendants SKIPPED.
Independent branches keep running. Shutdown stops admission, cancels every
tracked handle once and reports the run as interrupted.

Example:
    >>> orchestrator = Orchestrator(graph, local_backend(settings), settings=settings)
    >>> report = await orchestrator.execute()
    >>> report.failed
    False
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from .config import EngineSettings
from .events import JobStatusChanged, RunEvent, RunFinished, RunStarted, ShutdownRequested
from .exceptions import (
    ConfigurationError,
    HookError,
    StatusError,
    SubmitError,
    TransformError,
)
from .graph import JobGraph
from .hooks import HookExecutor
from .models import Job, JobEvent, JobId, JobOutcome, JobStatus, RunReport, advance
from .runners.base import Backend, JobHandle, PollStatus
from .shutdown import ShutdownCoordinator
from .transform import ArtifactTransformer, ensure_working_dir

logger = logging.getLogger(__name__)


# Messages from launch and monitor tasks to the control loop


@dataclass
class _Launched:
    job_id: JobId
    handle: JobHandle


@dataclass
class _LaunchFailed:
    job_id: JobId
    error: str


@dataclass
class _LaunchAborted:
    job_id: JobId


@dataclass
class _Finished:
    job_id: JobId
    verdict: PollStatus
    error: Optional[str] = None
    post_hook_errors: List[str] = field(default_factory=list)


@dataclass
class _Shutdown:
    reason: str


class Orchestrator:
    """
    Executes a job graph on one or more backends.

    Args:
        graph: Frozen job graph
        backends: One Backend, or a mapping of backend name to Backend
        transformer: Artifact transformer (defaults from settings)
        hooks: Hook executor (defaults from settings)
        settings: Engine settings
        event_callback: Called with every RunEvent
        default_backend: Backend name for jobs that do not name one
        shutdown: Coordinator used to cancel handles (and trap signals)
        handle_signals: Install SIGINT/SIGTERM/SIGHUP handlers while executing

    Raises:
        ConfigurationError: No backends, or a job names an unknown backend
    """

    def __init__(
        self,
        graph: JobGraph,
        backends: Union[Backend, Mapping[str, Backend]],
        transformer: Optional[ArtifactTransformer] = None,
        hooks: Optional[HookExecutor] = None,
        settings: Optional[EngineSettings] = None,
        event_callback: Optional[Callable[[RunEvent], None]] = None,
        default_backend: Optional[str] = None,
        shutdown: Optional[ShutdownCoordinator] = None,
        handle_signals: bool = False,
    ):
        self.graph = graph
        self.settings = settings or EngineSettings()
        self.transformer = transformer or ArtifactTransformer(self.settings.continuation_extension)
        self.hooks = hooks or HookExecutor(self.settings.hook_timeout)
        self.shutdown = shutdown or ShutdownCoordinator(self.settings.shutdown_grace_window)
        self.event_callback = event_callback
        self.handle_signals = handle_signals

        if isinstance(backends, Backend):
            backends = {backends.name: backends}
        self.backends: Dict[str, Backend] = dict(backends)
        if not self.backends:
            raise ConfigurationError("At least one backend is required", config_key="backends")
        if default_backend is None:
            default_backend = "local" if "local" in self.backends else next(iter(self.backends))
        if default_backend not in self.backends:
            raise ConfigurationError(
                f"Default backend '{default_backend}' is not configured", config_key="backend"
            )
        self.default_backend = default_backend

        for job in graph:
            if job.backend is not None and job.backend not in self.backends:
                raise ConfigurationError(
                    f"Job {job.label} uses unknown backend '{job.backend}'",
                    config_key="backend",
                )

        # Written only by the control loop
        self._status: Dict[JobId, JobStatus] = {jid: JobStatus.PENDING for jid in graph.job_ids}
        self._outcomes: Dict[JobId, JobOutcome] = {}
        self._handles: Dict[JobId, JobHandle] = {}

        self._launch_tasks: Dict[JobId, asyncio.Task] = {}
        self._monitor_tasks: Dict[JobId, asyncio.Task] = {}
        # Launches past the point of no return (submit in flight)
        self._submitting: Set[JobId] = set()
        # Monitors that saw a terminal verdict and are finishing post-hooks
        self._verdicts: Dict[JobId, Tuple[PollStatus, Optional[str]]] = {}

        self._queue: Optional[asyncio.Queue] = None
        self._shutdown_requested = False
        self._shutdown_reason = ""
        self._executed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def status(self) -> Dict[JobId, JobStatus]:
        """Snapshot of the current status map."""
        return dict(self._status)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """
        Stop admitting jobs and cancel everything in flight.

        Safe to call from any task on the loop or from a loop signal
        handler, before or during execute(). Repeated calls are ignored.
        """
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._shutdown_reason = reason
        if self._queue is not None:
            self._queue.put_nowait(_Shutdown(reason))

    async def execute(self) -> RunReport:
        """
        Run the graph until every job is terminal.

        Returns:
            RunReport with one outcome per job, in topological order

        Raises:
            RuntimeError: execute() was already called on this orchestrator
        """
        if self._executed:
            raise RuntimeError("Orchestrator.execute() can only be called once")
        self._executed = True
        self._queue = asyncio.Queue()

        if self.handle_signals:
            self.shutdown.install(self.request_shutdown)

        logger.info(f"Starting run of {len(self.graph)} job(s)")
        self._emit(RunStarted(total_jobs=len(self.graph)))

        try:
            if self._shutdown_requested:
                self._queue.put_nowait(_Shutdown(self._shutdown_reason))
            else:
                self._admit_ready()

            while not self._all_terminal():
                message = await self._queue.get()
                await self._dispatch(message)
                if self._shutdown_requested:
                    self._cancel_unstarted()
                else:
                    self._admit_ready()
        finally:
            await self._abandon_tasks()
            if self.handle_signals:
                self.shutdown.remove()

        report = RunReport(
            outcomes={jid: self._outcomes[jid] for jid in self.graph.topological_order()},
            interrupted=self._shutdown_requested,
        )
        counts = report.counts()
        logger.info(
            "Run finished: "
            + ", ".join(f"{n} {name}" for name, n in counts.items() if n)
            + (" (interrupted)" if report.interrupted else "")
        )
        self._emit(RunFinished(counts=counts, failed=report.failed, interrupted=report.interrupted))
        return report

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _all_terminal(self) -> bool:
        return all(status.is_terminal() for status in self._status.values())

    async def _dispatch(self, message) -> None:
        if isinstance(message, _Launched):
            await self._on_launched(message)
        elif isinstance(message, _LaunchFailed):
            self._on_launch_failed(message)
        elif isinstance(message, _LaunchAborted):
            self._on_launch_aborted(message)
        elif isinstance(message, _Finished):
            self._on_finished(message)
        elif isinstance(message, _Shutdown):
            await self._on_shutdown(message)
        else:
            raise TypeError(f"Unexpected message {message!r}")

    def _backend_for(self, job: Job) -> Backend:
        return self.backends[job.backend or self.default_backend]

    def _admit_ready(self) -> None:
        ready = self.graph.ready_set(self._status)
        for job_id in self.graph.topological_order():
            if job_id not in ready:
                continue
            job = self.graph.job(job_id)
            self._transition(job_id, JobEvent.ADMIT)
            self._launch_tasks[job_id] = asyncio.create_task(
                self._launch(job), name=f"launch-{job.label}"
            )

    def _cancel_unstarted(self) -> None:
        """During shutdown, jobs that became ready are cancelled, not admitted."""
        ready = self.graph.ready_set(self._status)
        for job_id in self.graph.topological_order():
            if job_id in ready:
                self._transition(job_id, JobEvent.CANCEL, error="not started: run was shut down")
                self._cascade(job_id)

    def _on_launch_failed(self, message: _LaunchFailed) -> None:
        self._launch_tasks.pop(message.job_id, None)
        self._submitting.discard(message.job_id)
        if self._status[message.job_id] != JobStatus.READY:
            return
        self._transition(message.job_id, JobEvent.FAIL, error=message.error)
        self._cascade(message.job_id)

    def _on_launch_aborted(self, message: _LaunchAborted) -> None:
        self._launch_tasks.pop(message.job_id, None)
        if self._status[message.job_id] != JobStatus.READY:
            return
        self._transition(
            message.job_id, JobEvent.CANCEL, error="not started: run was shut down"
        )
        self._cascade(message.job_id)

    async def _on_launched(self, message: _Launched) -> None:
        job_id, handle = message.job_id, message.handle
        self._launch_tasks.pop(job_id, None)
        self._submitting.discard(job_id)
        job = self.graph.job(job_id)
        backend = self._backend_for(job)

        if self._shutdown_requested:
            # Submitted after shutdown began: cancel without ever running it
            logger.warning(f"{job.label} was submitted during shutdown, cancelling {handle}")
            confirmed = await self.shutdown.cancel_all([(handle, backend.runner)])
            backend.monitor.forget(handle)
            self._transition(
                job_id,
                JobEvent.CANCEL,
                error="cancelled during shutdown",
                handle=handle,
                cancel_confirmed=confirmed[handle],
            )
            self._cascade(job_id)
            return

        self._handles[job_id] = handle
        self._transition(job_id, JobEvent.START, handle=handle)
        self._monitor_tasks[job_id] = asyncio.create_task(
            self._monitor(job, handle, backend), name=f"monitor-{job.label}"
        )

    def _on_finished(self, message: _Finished) -> None:
        job_id = message.job_id
        self._monitor_tasks.pop(job_id, None)
        self._verdicts.pop(job_id, None)
        handle = self._handles.pop(job_id, None)
        if handle is not None:
            self._backend_for(self.graph.job(job_id)).monitor.forget(handle)

        if self._status[job_id] != JobStatus.RUNNING:
            return

        event = JobEvent.SUCCEED if message.verdict == PollStatus.SUCCEEDED else JobEvent.FAIL
        self._transition(
            job_id,
            event,
            error=message.error,
            handle=handle,
            post_hook_errors=message.post_hook_errors,
        )
        if event == JobEvent.FAIL:
            self._cascade(job_id)

    async def _on_shutdown(self, message: _Shutdown) -> None:
        logger.warning(f"Shutting down: {message.reason}")
        self._emit(ShutdownRequested(reason=message.reason))

        # Launches that have not reached submission are stopped outright
        stoppable = {
            jid: task
            for jid, task in self._launch_tasks.items()
            if not task.done() and jid not in self._submitting
        }
        for task in stoppable.values():
            task.cancel()
        await asyncio.gather(*stoppable.values(), return_exceptions=True)
        for job_id, task in stoppable.items():
            if task.cancelled():
                self._launch_tasks.pop(job_id, None)
                self._transition(job_id, JobEvent.CANCEL, error="not started: run was shut down")
                self._cascade(job_id)

        # Running jobs: stop polling before cancelling, one cancel per handle
        to_cancel = [
            jid for jid in self._monitor_tasks if jid not in self._verdicts
        ]
        tasks = [self._monitor_tasks.pop(jid) for jid in to_cancel]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        targets = []
        for job_id in to_cancel:
            backend = self._backend_for(self.graph.job(job_id))
            targets.append((self._handles[job_id], backend.runner))
        confirmed, _ = await asyncio.gather(
            self.shutdown.cancel_all(targets), self._drain_post_hooks()
        )

        for job_id in to_cancel:
            handle = self._handles.pop(job_id)
            self._backend_for(self.graph.job(job_id)).monitor.forget(handle)
            ok = confirmed.get(handle, False)
            self._transition(
                job_id,
                JobEvent.CANCEL,
                error="cancelled by shutdown" if ok else "cancellation not confirmed",
                handle=handle,
                cancel_confirmed=ok,
            )
            self._cascade(job_id)

        self._cancel_unstarted()

    async def _drain_post_hooks(self) -> None:
        """
        Give monitors already running post-hooks the grace window to finish.

        Jobs whose post-hooks are still running afterwards keep their
        computed verdict; the interruption is recorded as a post-hook error.
        """
        finishing = {
            jid: self._monitor_tasks[jid] for jid in self._verdicts if jid in self._monitor_tasks
        }
        if not finishing:
            return
        _, pending = await asyncio.wait(
            finishing.values(), timeout=self.shutdown.grace_window
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for job_id, task in finishing.items():
            if not task.cancelled():
                # Completed normally; its _Finished message is already queued
                continue
            self._monitor_tasks.pop(job_id, None)
            verdict, error = self._verdicts.pop(job_id)
            handle = self._handles.pop(job_id, None)
            if handle is not None:
                self._backend_for(self.graph.job(job_id)).monitor.forget(handle)
            logger.warning(f"Post-hooks of {self.graph.job(job_id).label} interrupted by shutdown")
            event = JobEvent.SUCCEED if verdict == PollStatus.SUCCEEDED else JobEvent.FAIL
            self._transition(
                job_id,
                event,
                error=error,
                handle=handle,
                post_hook_errors=["post-hooks interrupted by shutdown"],
            )
            if event == JobEvent.FAIL:
                self._cascade(job_id)

    def _cascade(self, job_id: JobId) -> None:
        """Skip every not-started descendant of a job that will never succeed."""
        origin = self.graph.job(job_id)
        for descendant in self.graph.descendants(job_id):
            if self._status[descendant] == JobStatus.PENDING:
                self._transition(
                    descendant,
                    JobEvent.SKIP,
                    error=f"dependency {origin.label} {self._status[job_id].value}",
                )

    def _transition(
        self,
        job_id: JobId,
        event: JobEvent,
        error: Optional[str] = None,
        handle: Optional[JobHandle] = None,
        post_hook_errors: Optional[List[str]] = None,
        cancel_confirmed: bool = True,
    ) -> JobStatus:
        old = self._status[job_id]
        new = advance(old, event)
        self._status[job_id] = new
        job = self.graph.job(job_id)

        if new == JobStatus.FAILED:
            logger.error(f"{job.label}: {old.value} -> {new.value}" + (f" ({error})" if error else ""))
        elif new in (JobStatus.RUNNING, JobStatus.SUCCEEDED, JobStatus.CANCELLED):
            logger.info(f"{job.label}: {old.value} -> {new.value}")
        else:
            logger.debug(f"{job.label}: {old.value} -> {new.value}")

        if new.is_terminal():
            self._outcomes[job_id] = JobOutcome(
                job_id=job_id,
                seed_name=job.seed_name,
                status=new,
                error=error,
                handle=str(handle) if handle else None,
                post_hook_errors=list(post_hook_errors or []),
                cancel_confirmed=cancel_confirmed,
            )

        self._emit(JobStatusChanged(
            job_id=job_id,
            seed_name=job.seed_name,
            old_status=old,
            new_status=new,
            handle=str(handle) if handle else None,
            error=error,
        ))
        return new

    def _emit(self, event: RunEvent) -> None:
        if self.event_callback:
            try:
                self.event_callback(event)
            except Exception:
                # A broken observer must not stop the run
                logger.exception("Error in event callback")

    async def _abandon_tasks(self) -> None:
        """Cancel helper tasks left over if execute() itself was cancelled."""
        leftovers = [
            task
            for task in (*self._launch_tasks.values(), *self._monitor_tasks.values())
            if not task.done()
        ]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Launch and monitor tasks
    # ------------------------------------------------------------------

    async def _launch(self, job: Job) -> None:
        """Pre-hooks, transformation, submission; result goes to the queue."""
        backend = self._backend_for(job)
        try:
            ensure_working_dir(job)
            await self.hooks.run_all(job.pre_hooks, job.working_dir)

            parent = self.graph.primary_parent(job.id)
            await asyncio.to_thread(self.transformer.stage, parent, job)

            if self._shutdown_requested:
                self._queue.put_nowait(_LaunchAborted(job.id))
                return
            self._submitting.add(job.id)
            handle = await backend.runner.submit(job)
        except HookError as e:
            self._queue.put_nowait(_LaunchFailed(job.id, f"pre-hook failed: {e}"))
            return
        except (TransformError, SubmitError) as e:
            self._queue.put_nowait(_LaunchFailed(job.id, str(e)))
            return
        except Exception as e:
            logger.exception(f"Unexpected error launching {job.label}")
            self._queue.put_nowait(_LaunchFailed(job.id, f"{type(e).__name__}: {e}"))
            return

        self._queue.put_nowait(_Launched(job.id, handle))

    async def _monitor(self, job: Job, handle: JobHandle, backend: Backend) -> None:
        """Poll until terminal, run post-hooks, report."""
        try:
            verdict, error = await self._poll_until_terminal(job, handle, backend)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error monitoring {job.label}")
            verdict, error = PollStatus.FAILED, f"{type(e).__name__}: {e}"

        self._verdicts[job.id] = (verdict, error)
        post_hook_errors = await self.hooks.run_collecting(job.post_hooks, job.working_dir)
        self._queue.put_nowait(_Finished(job.id, verdict, error, post_hook_errors))

    async def _poll_until_terminal(
        self, job: Job, handle: JobHandle, backend: Backend
    ) -> Tuple[PollStatus, Optional[str]]:
        """
        Returns the terminal verdict and, for failures, a short reason.

        Undeterminable polls (StatusError or poll timeout) count as RUNNING
        until max_unknown_polls of them happen in a row.
        """
        unknown = 0
        while True:
            try:
                verdict = await asyncio.wait_for(
                    backend.monitor.poll(handle), timeout=self.settings.poll_timeout
                )
            except (StatusError, asyncio.TimeoutError) as e:
                unknown += 1
                reason = str(e) or "poll timed out"
                logger.warning(
                    f"Could not determine state of {job.label} "
                    f"({unknown}/{self.settings.max_unknown_polls}): {reason}"
                )
                if unknown >= self.settings.max_unknown_polls:
                    return PollStatus.FAILED, (
                        f"state of {handle} undeterminable after {unknown} consecutive polls"
                    )
            else:
                unknown = 0
                if verdict == PollStatus.FAILED:
                    return verdict, f"{handle} finished unsuccessfully"
                if verdict == PollStatus.SUCCEEDED:
                    return verdict, None
            await asyncio.sleep(self.settings.poll_interval)

