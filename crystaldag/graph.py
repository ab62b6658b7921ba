"""
Job dependency graph.

Graphs are assembled with a GraphBuilder, which validates every job and edge
as it is added (no duplicate ids, no dangling continuations, no cycles), and
then frozen into a JobGraph. A JobGraph never changes after build(): nodes are
stored in an arena (tuple) and adjacency is computed once, so the orchestrator
can read it from any task without locking.

Example:
    builder = GraphBuilder()
    scf = builder.add_root("mgo", Path("runs/mgo"), CommandSpec("crystalOMP"))
    dos = builder.add_child(scf.id, "mgo_DOS", CommandSpec("properties"))
    graph = builder.build()
    graph.topological_order()  # [scf.id, dos.id]
"""

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .dependency_utils import is_reachable, topological_sort
from .exceptions import (
    DanglingContinuationError,
    DuplicateIdError,
    GraphFrozenError,
    UnknownJobError,
    WouldCycleError,
)
from .models import CommandSpec, DependencyEdge, Job, JobId, JobStatus

logger = logging.getLogger(__name__)


class GraphBuilder:
    """
    Incrementally assembles a validated job graph.

    Every mutation is checked immediately; a rejected job or edge leaves the
    builder unchanged.
    """

    def __init__(self):
        self._jobs: Dict[JobId, Job] = {}
        self._successors: Dict[JobId, Set[JobId]] = {}
        self._frozen = False

    def __contains__(self, job_id: JobId) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def job(self, job_id: JobId) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise UnknownJobError(f"Unknown job {job_id}", job_id=job_id) from None

    def add_job(self, job: Job) -> Job:
        """
        Add a job to the graph.

        If the job continues from a parent, the matching dependency edge
        is added as well.

        Args:
            job: Job to add

        Returns:
            The job, for chaining

        Raises:
            GraphFrozenError: build() was already called
            DuplicateIdError: A job with the same id exists
            DanglingContinuationError: continuation_from is not in the graph
        """
        self._check_mutable()

        if job.id in self._jobs:
            raise DuplicateIdError(f"Job {job.id} is already in the graph", job_id=job.id)

        if job.continuation_from is not None and job.continuation_from not in self._jobs:
            raise DanglingContinuationError(
                f"Job '{job.seed_name}' continues from unknown job {job.continuation_from}",
                job_id=job.id,
                missing_id=job.continuation_from,
            )

        self._jobs[job.id] = job
        self._successors[job.id] = set()

        if job.continuation_from is not None:
            # A fresh node has no outgoing edges, so this cannot close a cycle
            self._successors[job.continuation_from].add(job.id)

        logger.debug(f"Added job {job.label}")
        return job

    def add_dependency(self, from_job: JobId, to_job: JobId) -> DependencyEdge:
        """
        Declare that ``to_job`` depends on ``from_job``.

        Adding an edge that already exists is a no-op.

        Raises:
            GraphFrozenError: build() was already called
            UnknownJobError: Either id is not in the graph
            WouldCycleError: ``from_job`` is reachable from ``to_job``
        """
        self._check_mutable()

        for job_id in (from_job, to_job):
            if job_id not in self._jobs:
                raise UnknownJobError(f"Unknown job {job_id}", job_id=job_id)

        if is_reachable(self._successors, to_job, from_job):
            raise WouldCycleError(
                f"Dependency {self._jobs[from_job].label} -> {self._jobs[to_job].label} "
                f"would create a cycle",
                from_job=from_job,
                to_job=to_job,
            )

        self._successors[from_job].add(to_job)
        return DependencyEdge(from_job, to_job)

    def add_root(self, seed_name: str, working_dir: Path, command: CommandSpec, **kwargs) -> Job:
        """Create and add a job without a continuation parent."""
        return self.add_job(Job.create(seed_name, Path(working_dir), command, **kwargs))

    def add_child(
        self,
        parent_id: JobId,
        seed_name: str,
        command: CommandSpec,
        working_dir: Optional[Path] = None,
        continuation: bool = True,
        **kwargs,
    ) -> Job:
        """
        Create and add a job that depends on ``parent_id``.

        Args:
            parent_id: Job the new job depends on
            seed_name: Seed name of the new job
            command: How to invoke the new job
            working_dir: Reuse this directory instead of the derived
                         ``<parent_working_dir>/<seed_name>``
            continuation: Whether the child resumes from the parent's
                          continuation artifact (otherwise a plain dependency)
            **kwargs: Other Job fields (hooks, seed_files, transformation, ...)

        Returns:
            The new job
        """
        parent = self.job(parent_id)
        if working_dir is None:
            working_dir = parent.working_dir / seed_name

        job = Job.create(
            seed_name,
            Path(working_dir),
            command,
            continuation_from=parent_id if continuation else None,
            **kwargs,
        )
        self.add_job(job)
        if not continuation:
            self.add_dependency(parent_id, job.id)
        return job

    def build(self) -> "JobGraph":
        """Freeze the builder and return the immutable graph."""
        self._frozen = True
        return JobGraph(self._jobs.values(), self._successors)

    def _check_mutable(self) -> None:
        if self._frozen:
            raise GraphFrozenError("Graph has already been built; create a new GraphBuilder")


class JobGraph:
    """
    Immutable, validated dependency graph.

    Nodes live in an arena indexed by position; the dependency and dependent
    lists hold arena indices and are derived once in the constructor.
    """

    def __init__(self, jobs, successors: Mapping[JobId, Set[JobId]]):
        self._jobs: Tuple[Job, ...] = tuple(jobs)
        self._index: Dict[JobId, int] = {job.id: i for i, job in enumerate(self._jobs)}

        dependents: List[List[int]] = [[] for _ in self._jobs]
        dependencies: List[List[int]] = [[] for _ in self._jobs]
        for src, targets in successors.items():
            i = self._index[src]
            for dst in targets:
                j = self._index[dst]
                dependents[i].append(j)
                dependencies[j].append(i)

        by_id = lambda idx: self._jobs[idx].id  # noqa: E731
        self._dependents: Tuple[Tuple[int, ...], ...] = tuple(
            tuple(sorted(d, key=by_id)) for d in dependents
        )
        self._dependencies: Tuple[Tuple[int, ...], ...] = tuple(
            tuple(sorted(d, key=by_id)) for d in dependencies
        )

        order = topological_sort(
            range(len(self._jobs)),
            {i: self._dependents[i] for i in range(len(self._jobs))},
            key=by_id,
        )
        self._order: Tuple[JobId, ...] = tuple(self._jobs[i].id for i in order)

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(self._jobs)

    def __contains__(self, job_id: JobId) -> bool:
        return job_id in self._index

    def _idx(self, job_id: JobId) -> int:
        try:
            return self._index[job_id]
        except KeyError:
            raise UnknownJobError(f"Unknown job {job_id}", job_id=job_id) from None

    def job(self, job_id: JobId) -> Job:
        return self._jobs[self._idx(job_id)]

    @property
    def job_ids(self) -> List[JobId]:
        return [job.id for job in self._jobs]

    @property
    def edges(self) -> List[DependencyEdge]:
        return [
            DependencyEdge(self._jobs[i].id, self._jobs[j].id)
            for i, targets in enumerate(self._dependents)
            for j in targets
        ]

    def dependencies(self, job_id: JobId) -> List[JobId]:
        """Jobs that must succeed before ``job_id`` may start."""
        return [self._jobs[i].id for i in self._dependencies[self._idx(job_id)]]

    def dependents(self, job_id: JobId) -> List[JobId]:
        """Jobs that directly depend on ``job_id``."""
        return [self._jobs[i].id for i in self._dependents[self._idx(job_id)]]

    def descendants(self, job_id: JobId) -> List[JobId]:
        """All transitive dependents of ``job_id``, in topological order."""
        seen: Set[int] = set()
        stack = list(self._dependents[self._idx(job_id)])
        while stack:
            i = stack.pop()
            if i not in seen:
                seen.add(i)
                stack.extend(self._dependents[i])
        ids = {self._jobs[i].id for i in seen}
        return [jid for jid in self._order if jid in ids]

    def roots(self) -> List[JobId]:
        return [jid for jid in self._order if not self._dependencies[self._index[jid]]]

    def continuation_parent(self, job_id: JobId) -> Optional[Job]:
        parent_id = self.job(job_id).continuation_from
        return self.job(parent_id) if parent_id is not None else None

    def primary_parent(self, job_id: JobId) -> Optional[Job]:
        """
        The parent a transformation reads from: the continuation parent if
        there is one, otherwise the lowest-id dependency.
        """
        parent = self.continuation_parent(job_id)
        if parent is not None:
            return parent
        deps = self._dependencies[self._idx(job_id)]
        return self._jobs[deps[0]] if deps else None

    def topological_order(self) -> List[JobId]:
        """
        Deterministic linear extension of the dependency order.

        Ties are broken by ascending JobId, so two runs over identical
        graphs give identical results.
        """
        return list(self._order)

    def ready_set(self, status_map: Mapping[JobId, JobStatus]) -> Set[JobId]:
        """All PENDING jobs whose every dependency has SUCCEEDED."""
        ready = set()
        for i, job in enumerate(self._jobs):
            if status_map.get(job.id, JobStatus.PENDING) != JobStatus.PENDING:
                continue
            if all(
                status_map.get(self._jobs[d].id) == JobStatus.SUCCEEDED
                for d in self._dependencies[i]
            ):
                ready.add(job.id)
        return ready

    def describe(self) -> str:
        lines = []
        for jid in self._order:
            job = self.job(jid)
            deps = ", ".join(self.job(d).label for d in self.dependencies(jid)) or "-"
            lines.append(f"{job.label} <- {deps}")
        return "\n".join(lines)
