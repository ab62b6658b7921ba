"""
Artifact transformation: building a child job's input files from its parent.

The default policy copies the parent's continuation artifact
(``<parent_seed><ext>``, e.g. the CRYSTAL wave function ``mgo.f9``) into the
child's directory under the child's seed name (``mgo_DOS.f9``), plus the
child's declared seed files. A job with its own transformation function gets
exactly what the function returns and nothing else.

Transformation is evaluated lazily, right before the child is submitted, so
regenerated parent artifacts are always picked up fresh.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional

from .exceptions import SourceArtifactMissingError, TransformError, WriteFailureError
from .models import Job, TransformContext

logger = logging.getLogger(__name__)


def ensure_working_dir(job: Job) -> Path:
    """
    Create the job's working directory if needed; an existing directory
    and its contents are left as they are.

    Raises:
        WriteFailureError: The directory cannot be created
    """
    try:
        job.working_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteFailureError(
            f"Cannot create working directory {job.working_dir}: {e}",
            job_id=job.id,
            path=job.working_dir,
        ) from e
    return job.working_dir


class ArtifactTransformer:
    """
    Prepares and writes the file set a job needs before submission.

    Attributes:
        continuation_extension: Extension of the continuation artifact
    """

    def __init__(self, continuation_extension: str = ".f9"):
        if not continuation_extension.startswith("."):
            continuation_extension = f".{continuation_extension}"
        self.continuation_extension = continuation_extension

    def prepare(self, parent: Optional[Job], child: Job) -> Dict[str, bytes]:
        """
        Compute the files ``child`` needs, without touching the filesystem
        beyond reading sources.

        Args:
            parent: The child's primary parent (None for root jobs)
            child: The job about to be submitted

        Returns:
            Mapping of file name (relative to child.working_dir) to content

        Raises:
            SourceArtifactMissingError: A required parent artifact or seed
                file does not exist
            TransformError: A custom transformation failed or returned an
                unusable mapping
        """
        if child.transformation is not None:
            return self._run_custom(parent, child)

        files: Dict[str, bytes] = {}

        for seed_file in child.seed_files:
            if not seed_file.is_file():
                raise SourceArtifactMissingError(
                    f"Seed file for {child.label} not found: {seed_file}",
                    job_id=child.id,
                    path=seed_file,
                )
            files[seed_file.name] = seed_file.read_bytes()

        if parent is not None and child.continuation_from == parent.id:
            source = parent.artifact(self.continuation_extension)
            if not source.is_file():
                raise SourceArtifactMissingError(
                    f"Continuation artifact for {child.label} not found: {source}",
                    job_id=child.id,
                    path=source,
                )
            target = f"{child.seed_name}{self.continuation_extension}"
            if target in files:
                logger.warning(
                    f"Seed file {target} of {child.label} is replaced by the "
                    f"continuation artifact from {parent.label}"
                )
            files[target] = source.read_bytes()

        return files

    def _run_custom(self, parent: Optional[Job], child: Job) -> Dict[str, bytes]:
        context = TransformContext(
            parent_dir=parent.working_dir if parent else None,
            parent_seed=parent.seed_name if parent else None,
            child_dir=child.working_dir,
            child_seed=child.seed_name,
        )
        try:
            produced = child.transformation(context)
        except TransformError:
            raise
        except FileNotFoundError as e:
            raise SourceArtifactMissingError(
                f"Transformation for {child.label} could not find {e.filename}",
                job_id=child.id,
                path=Path(e.filename) if e.filename else None,
            ) from e
        except Exception as e:
            raise TransformError(
                f"Transformation for {child.label} failed: {e}", job_id=child.id
            ) from e

        if not isinstance(produced, Mapping):
            raise TransformError(
                f"Transformation for {child.label} returned {type(produced).__name__}, "
                f"expected a mapping of file name to bytes",
                job_id=child.id,
            )

        files: Dict[str, bytes] = {}
        for name, content in produced.items():
            if isinstance(content, str):
                content = content.encode()
            if not isinstance(content, (bytes, bytearray)):
                raise TransformError(
                    f"Transformation for {child.label} produced non-bytes content for {name}",
                    job_id=child.id,
                )
            files[str(name)] = bytes(content)
        return files

    def materialize(self, child: Job, files: Mapping[str, bytes]) -> List[Path]:
        """
        Write prepared files into the child's working directory.

        The directory is created if needed and reused untouched if it
        already exists; only the given files are (over)written.

        Returns:
            Paths written

        Raises:
            TransformError: A file name escapes the working directory
            WriteFailureError: The directory or a file cannot be written
        """
        ensure_working_dir(child)

        written = []
        for name, content in files.items():
            target = child.working_dir / self._safe_relative(child, name)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            except OSError as e:
                raise WriteFailureError(
                    f"Cannot write {target} for {child.label}: {e}",
                    job_id=child.id,
                    path=target,
                ) from e
            written.append(target)

        logger.debug(f"Staged {len(written)} file(s) into {child.working_dir}")
        return written

    def stage(self, parent: Optional[Job], child: Job) -> List[Path]:
        """prepare() followed by materialize()."""
        return self.materialize(child, self.prepare(parent, child))

    @staticmethod
    def _safe_relative(child: Job, name: str) -> Path:
        rel = PurePosixPath(name)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts:
            raise TransformError(
                f"Refusing to write '{name}' outside the working directory of {child.label}",
                job_id=child.id,
            )
        return Path(*rel.parts)
