"""
YAML workflow definitions.

A workflow file lists jobs by a local name and wires them together with
``continues`` (resume from the parent's continuation artifact) and
``after`` (plain ordering dependency). String fields are Jinja2 templates
rendered in a sandbox with ``seed``, ``working_dir``, ``parent_seed`` and
any top-level ``vars``:

    vars:
      code: crystalOMP
    defaults:
      stdin: "{{ seed }}.d12"
      stdout: "{{ seed }}.out"
    jobs:
      - name: scf
        seed: mgo
        working_dir: runs/mgo
        command: "{{ code }}"
        seed_files: ["inputs/mgo.d12"]
      - name: dos
        seed: "{{ parent_seed }}_DOS"
        continues: scf
        command: properties
        seed_files: ["inputs/mgo_DOS.d3"]
        stdin: "{{ seed }}.d3"
        post_hooks: ["gzip -k {{ seed }}.out"]

Jobs without a ``working_dir`` run in ``<first parent's working_dir>/<seed>``
(the parent named by ``continues``, else the first ``after`` entry); jobs
without parents run in ``<file directory>/<seed>``. Relative paths are
resolved against the directory holding the file.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .dependency_utils import CircularDependencyError, assert_acyclic, topological_sort
from .exceptions import ConfigurationError
from .graph import GraphBuilder, JobGraph
from .models import CommandHook, CommandSpec, JobId

logger = logging.getLogger(__name__)


class HookEntry(BaseModel):
    """
    A hook as written in the file.

    A plain string is kept whole in ``line`` and shell-split after
    rendering, so templates may contain spaces.
    """

    model_config = ConfigDict(extra="forbid")

    command: Optional[str] = None
    line: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    working_dir: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _command_or_line(self) -> "HookEntry":
        if not self.command and not self.line:
            raise ValueError("hook needs a command")
        return self


class JobEntry(BaseModel):
    """One job as written in the file, before template rendering."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    seed: Optional[str] = None
    working_dir: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    stdin: Optional[str] = None
    stdout: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    continues: Optional[str] = None
    after: List[str] = Field(default_factory=list)
    seed_files: List[str] = Field(default_factory=list)
    pre_hooks: List[HookEntry] = Field(default_factory=list)
    post_hooks: List[HookEntry] = Field(default_factory=list)
    backend: Optional[str] = None

    @field_validator("pre_hooks", "post_hooks", mode="before")
    @classmethod
    def _hook_strings(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        hooks = []
        for item in value:
            if isinstance(item, str):
                if not item.strip():
                    raise ValueError("hook command must not be empty")
                hooks.append({"line": item})
            else:
                hooks.append(item)
        return hooks

    @field_validator("after", mode="before")
    @classmethod
    def _single_after(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value


class WorkflowSpec(BaseModel):
    """Top-level document."""

    model_config = ConfigDict(extra="forbid")

    vars: Dict[str, Any] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    engine: Dict[str, Any] = Field(default_factory=dict)
    jobs: List[JobEntry] = Field(..., min_length=1)


@dataclass
class Workflow:
    """
    A loaded workflow.

    Attributes:
        graph: The frozen job graph
        job_ids: Local job name -> JobId
        engine: Engine settings overrides from the file's ``engine:`` section
        source: File the workflow was read from
    """

    graph: JobGraph
    job_ids: Dict[str, JobId]
    engine: Dict[str, Any] = field(default_factory=dict)
    source: Optional[Path] = None


class _Renderer:
    def __init__(self, variables: Dict[str, Any], source: Path):
        # Sandboxed: workflow files may come from other users
        self._env = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)
        self._vars = variables
        self._source = source

    def __call__(self, text: Optional[str], job_name: str, **context: Any) -> Optional[str]:
        if text is None:
            return None
        try:
            return self._env.from_string(text).render(**self._vars, **context)
        except TemplateError as e:
            raise ConfigurationError(
                f"Cannot render '{text}' for job '{job_name}': {e}",
                config_key=f"jobs.{job_name}",
                source=self._source,
            ) from e


def _resolve(base: Path, value: Union[str, Path]) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def load_workflow(path: Path) -> Workflow:
    """
    Load a workflow file into a frozen graph.

    Args:
        path: YAML workflow file

    Returns:
        Workflow with the built graph and local name mapping

    Raises:
        ConfigurationError: Unreadable file, invalid structure, unknown or
            duplicate job names, dependency cycles, or template errors
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Workflow file not found: {path}", source=path)

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", source=path) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}", source=path)

    defaults = raw.get("defaults") or {}
    if isinstance(raw.get("jobs"), list) and isinstance(defaults, dict):
        raw["jobs"] = [
            {**defaults, **entry} if isinstance(entry, dict) else entry for entry in raw["jobs"]
        ]

    try:
        spec = WorkflowSpec(**raw)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid workflow {path}: {e}", config_key=key, source=path
        ) from e

    return build_workflow(spec, base_dir=path.parent.resolve(), source=path)


def build_workflow(spec: WorkflowSpec, base_dir: Path, source: Optional[Path] = None) -> Workflow:
    """Turn a validated WorkflowSpec into a graph (see load_workflow)."""
    label = f"workflow file '{source}'" if source else "workflow"
    entries: Dict[str, JobEntry] = {}
    for entry in spec.jobs:
        if entry.name in entries:
            raise ConfigurationError(
                f"Duplicate job name '{entry.name}' in {label}",
                config_key=f"jobs.{entry.name}",
                source=source,
            )
        entries[entry.name] = entry

    # parent name -> names of jobs that depend on it
    successors: Dict[str, List[str]] = {name: [] for name in entries}
    for entry in entries.values():
        parents = ([entry.continues] if entry.continues else []) + entry.after
        for parent in parents:
            if parent not in entries:
                raise ConfigurationError(
                    f"Job '{entry.name}' depends on unknown job '{parent}' in {label}",
                    config_key=f"jobs.{entry.name}",
                    source=source,
                )
            successors[parent].append(entry.name)

    try:
        assert_acyclic(successors, error_context=label)
    except CircularDependencyError as e:
        raise ConfigurationError(str(e), config_key="jobs", source=source) from e

    position = {name: i for i, name in enumerate(entries)}
    order = topological_sort(entries, successors, key=position.__getitem__)

    render = _Renderer(spec.vars, source or base_dir)
    builder = GraphBuilder()
    job_ids: Dict[str, JobId] = {}
    seeds: Dict[str, str] = {}

    for name in order:
        entry = entries[name]
        parent_name = entry.continues or (entry.after[0] if entry.after else None)
        parent_seed = seeds.get(parent_name) if parent_name else None
        context: Dict[str, Any] = {"parent_seed": parent_seed}

        seed = render(entry.seed or entry.name, name, **context)
        if not seed.strip():
            raise ConfigurationError(
                f"Seed of job '{name}' renders to an empty string in {label}",
                config_key=f"jobs.{name}.seed",
                source=source,
            )
        context["seed"] = seed

        if entry.working_dir is not None:
            working_dir = _resolve(base_dir, render(entry.working_dir, name, **context))
        elif parent_name is not None:
            # Dependent jobs nest under their first parent
            working_dir = builder.job(job_ids[parent_name]).working_dir / seed
        else:
            working_dir = base_dir / seed
        context["working_dir"] = str(working_dir)

        if not entry.command:
            raise ConfigurationError(
                f"Job '{name}' has no command in {label}",
                config_key=f"jobs.{name}.command",
                source=source,
            )
        program = render(entry.command, name, **context)
        if not program.strip():
            raise ConfigurationError(
                f"Command of job '{name}' renders to an empty string in {label}",
                config_key=f"jobs.{name}.command",
                source=source,
            )
        command = CommandSpec(
            program=program,
            args=tuple(render(arg, name, **context) for arg in entry.args),
            stdin=render(entry.stdin, name, **context),
            stdout=render(entry.stdout, name, **context),
            env={k: render(v, name, **context) for k, v in entry.env.items()},
        )

        def hooks(items: List[HookEntry]) -> List[CommandHook]:
            result = []
            for h in items:
                if h.line is not None:
                    parts = shlex.split(render(h.line, name, **context))
                    if not parts:
                        raise ConfigurationError(
                            f"Hook '{h.line}' of job '{name}' renders to an empty command",
                            config_key=f"jobs.{name}",
                            source=source,
                        )
                    program, args = parts[0], parts[1:]
                else:
                    program = render(h.command, name, **context)
                    args = [render(a, name, **context) for a in h.args]
                    if not program.strip():
                        raise ConfigurationError(
                            f"Hook '{h.command}' of job '{name}' renders to an empty command",
                            config_key=f"jobs.{name}",
                            source=source,
                        )
                result.append(CommandHook(
                    command=program,
                    args=tuple(args),
                    working_dir=(
                        _resolve(base_dir, render(h.working_dir, name, **context))
                        if h.working_dir else None
                    ),
                    timeout=h.timeout,
                ))
            return result

        kwargs = dict(
            seed_files=[_resolve(base_dir, render(p, name, **context)) for p in entry.seed_files],
            pre_hooks=hooks(entry.pre_hooks),
            post_hooks=hooks(entry.post_hooks),
            backend=entry.backend,
        )

        if entry.continues is not None:
            job = builder.add_child(
                job_ids[entry.continues], seed, command, working_dir=working_dir, **kwargs
            )
        else:
            job = builder.add_root(seed, working_dir, command, **kwargs)
        for parent in entry.after:
            builder.add_dependency(job_ids[parent], job.id)

        job_ids[name] = job.id
        seeds[name] = seed

    graph = builder.build()
    logger.debug(f"Loaded {len(graph)} job(s) from {label}")
    return Workflow(graph=graph, job_ids=job_ids, engine=dict(spec.engine), source=source)
