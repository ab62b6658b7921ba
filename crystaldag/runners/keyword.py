"""
Output-keyword monitor.

Some programs exit 0 after an error, and scheduler accounting only knows the
batch script's exit code. The keyword monitor reads the job's output listing
and looks for the text the program prints on normal or abnormal termination
(for CRYSTAL: ``EEEEEEEEEE TERMINATION`` and ``ERROR ****``).

Used alone it decides the job state from the file. Wrapped around another
monitor it only refines a terminal verdict: a failure keyword turns any
verdict into FAILED, a success keyword into SUCCEEDED.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import EngineSettings
from ..exceptions import StatusError
from .base import JobHandle, Monitor, PollStatus

logger = logging.getLogger(__name__)


@dataclass
class _ScanState:
    offset: int = 0
    tail: bytes = b""
    success: bool = False
    failure: bool = False


class KeywordMonitor(Monitor):
    """
    Scans a handle's output file for termination keywords.

    The file is read incrementally: each poll reads only what was appended
    since the previous one (plus enough overlap to catch a keyword split
    across reads).

    Attributes:
        inner: Monitor whose verdict is refined, or None
        success_keywords: Text marking normal termination
        failure_keywords: Text marking abnormal termination
    """

    def __init__(
        self,
        inner: Optional[Monitor] = None,
        settings: Optional[EngineSettings] = None,
        success_keywords: Optional[Sequence[str]] = None,
        failure_keywords: Optional[Sequence[str]] = None,
    ):
        super().__init__(settings or (inner.settings if inner else None))
        self.inner = inner
        self.success_keywords: List[str] = list(
            success_keywords if success_keywords is not None else self.settings.success_keywords
        )
        self.failure_keywords: List[str] = list(
            failure_keywords if failure_keywords is not None else self.settings.failure_keywords
        )
        keywords = self.success_keywords + self.failure_keywords
        self._overlap = max((len(k.encode()) for k in keywords), default=1) - 1
        self._scans: Dict[Tuple[str, str], _ScanState] = {}

    async def poll(self, handle: JobHandle) -> PollStatus:
        if handle.output_file is None:
            raise StatusError(f"No output file known for {handle}", handle=handle)

        if self.inner is not None:
            verdict = await self.inner.poll(handle)
            if verdict is PollStatus.RUNNING:
                return PollStatus.RUNNING
        else:
            verdict = PollStatus.RUNNING

        state = await asyncio.to_thread(self._scan, handle)
        if state.failure:
            return PollStatus.FAILED
        if state.success:
            return PollStatus.SUCCEEDED
        if self.inner is not None and verdict is PollStatus.SUCCEEDED:
            logger.warning(
                f"{handle} finished without a termination keyword in {handle.output_file}"
            )
        return verdict

    def _scan(self, handle: JobHandle) -> _ScanState:
        key = (handle.backend, handle.native_id)
        state = self._scans.setdefault(key, _ScanState())
        path: Path = handle.output_file

        try:
            with open(path, "rb") as f:
                f.seek(state.offset)
                chunk = f.read()
        except FileNotFoundError:
            # Not created yet (queued job, or the program has not started writing)
            return state
        except OSError as e:
            raise StatusError(f"Cannot read {path}: {e}", handle=handle) from e

        if not chunk:
            return state

        window = (state.tail + chunk).decode(errors="replace")
        state.success = state.success or any(k in window for k in self.success_keywords)
        state.failure = state.failure or any(k in window for k in self.failure_keywords)
        state.offset += len(chunk)
        data = state.tail + chunk
        state.tail = data[-self._overlap:] if self._overlap > 0 else b""
        return state

    def forget(self, handle: JobHandle) -> None:
        self._scans.pop((handle.backend, handle.native_id), None)
        if self.inner is not None:
            self.inner.forget(handle)
