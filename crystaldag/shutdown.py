"""
Shutdown coordination.

Two concerns live here: turning SIGINT/SIGTERM/SIGHUP into a shutdown
request on the running event loop, and cancelling every outstanding handle
exactly once, concurrently, within a bounded grace window.
"""

import asyncio
import logging
import signal
import sys
from typing import Callable, Dict, Optional, Sequence, Tuple

from .exceptions import CancelError
from .runners.base import JobHandle, Runner

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS: Tuple[signal.Signals, ...] = (
    signal.SIGINT,
    signal.SIGTERM,
    signal.SIGHUP,
)


class ShutdownCoordinator:
    """
    Installs signal handlers and drives cancellation of running jobs.

    Attributes:
        grace_window: Seconds cancel_all() waits for confirmations
        signals: Signals that trigger a shutdown request
    """

    def __init__(
        self,
        grace_window: float = 30.0,
        signals: Sequence[signal.Signals] = SHUTDOWN_SIGNALS,
    ):
        self.grace_window = grace_window
        self.signals = tuple(signals)
        self._installed: Tuple[signal.Signals, ...] = ()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._callback: Optional[Callable[[str], None]] = None
        self.received: Optional[signal.Signals] = None

    def install(self, callback: Callable[[str], None]) -> None:
        """
        Route shutdown signals to ``callback`` on the running loop.

        The callback receives a short reason string. Must be called from a
        coroutine; on platforms without loop signal support (Windows, or a
        loop outside the main thread) this is a no-op.

        Args:
            callback: Usually Orchestrator.request_shutdown
        """
        if sys.platform == "win32":
            return
        self._callback = callback
        loop = asyncio.get_running_loop()
        installed = []
        try:
            for sig in self.signals:
                loop.add_signal_handler(sig, self._on_signal, sig)
                installed.append(sig)
        except (RuntimeError, NotImplementedError, ValueError) as e:
            logger.debug(f"Signal handlers not installed: {e}")
            for sig in installed:
                loop.remove_signal_handler(sig)
            return
        self._loop = loop
        self._installed = tuple(installed)
        logger.debug(f"Installed shutdown handlers for {[s.name for s in self._installed]}")

    def remove(self) -> None:
        """Remove the handlers installed by install()."""
        if self._loop is None:
            return
        for sig in self._installed:
            try:
                self._loop.remove_signal_handler(sig)
            except (RuntimeError, NotImplementedError, ValueError):
                # Loop already closed
                pass
        self._installed = ()
        self._loop = None

    def _on_signal(self, sig: signal.Signals) -> None:
        if self.received is not None:
            logger.warning(f"Received {sig.name} again, shutdown already in progress")
            return
        self.received = sig
        logger.warning(f"Received {sig.name}, cancelling outstanding jobs")
        if self._callback is not None:
            self._callback(f"received {sig.name}")

    async def cancel_all(
        self, targets: Sequence[Tuple[JobHandle, Runner]]
    ) -> Dict[JobHandle, bool]:
        """
        Issue exactly one cancel per handle, all concurrently.

        Waits at most ``grace_window`` seconds. Cancel failures are logged
        and never raised.

        Args:
            targets: (handle, runner that produced it) pairs

        Returns:
            Mapping handle -> whether the backend confirmed the cancellation
        """
        confirmed: Dict[JobHandle, bool] = {handle: False for handle, _ in targets}
        if not targets:
            return confirmed

        async def _cancel(handle: JobHandle, runner: Runner) -> None:
            try:
                await runner.cancel(handle)
            except CancelError as e:
                logger.error(f"Cancel failed for {handle}: {e}")
                return
            except Exception:
                logger.exception(f"Unexpected error cancelling {handle}")
                return
            confirmed[handle] = True

        tasks = [asyncio.create_task(_cancel(handle, runner)) for handle, runner in targets]
        _, pending = await asyncio.wait(tasks, timeout=self.grace_window)

        if pending:
            logger.warning(
                f"{len(pending)} cancellation(s) not confirmed within {self.grace_window}s"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return confirmed
