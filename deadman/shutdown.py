"""
Signal discipline for the watchdog process.

- SIGHUP is ignored, so closing the terminal that armed a watchdog does
  not take the watchdog down with it.
- SIGTERM and SIGINT request a graceful shutdown. The handler does no
  cleanup itself: it flips a flag and wakes the main loop, which then
  releases the record and reports the resource state before exiting.
- SIGKILL cannot be handled. A killed watchdog leaves its record behind
  as an orphan.
"""

import signal
import threading
from typing import Callable
import structlog

logger = structlog.get_logger(__name__)


class GracefulShutdownHandler:
    """
    Cancellation token backed by signals.

    Usage:
        handler = GracefulShutdownHandler()
        handler.register_wakeup(monitor.wake)
        handler.install()

        # In main loop:
        while not handler.should_shutdown():
            # do work
    """

    def __init__(self):
        self.shutdown_requested = False
        self.signal_name = None
        self._requested = threading.Event()
        self._wakeups: list[Callable[[], None]] = []

    def register_wakeup(self, callback: Callable[[], None]) -> None:
        """
        Register a callback that interrupts a blocking wait.

        Callbacks run inside the signal handler and must be quick.
        """
        self._wakeups.append(callback)

    def install(self) -> None:
        signal.signal(signal.SIGHUP, signal.SIG_IGN)
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        logger.debug("signal_handlers_installed")

    def request_shutdown(self, reason: str = "requested") -> None:
        self.shutdown_requested = True
        self.signal_name = reason
        self._requested.set()
        for callback in self._wakeups:
            callback()

    def _handle_signal(self, signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=signal_name)
        self.request_shutdown(signal_name)

    def should_shutdown(self) -> bool:
        return self.shutdown_requested

    def wait(self, timeout: float) -> bool:
        """
        Sleep for up to timeout seconds, returning early on a shutdown request.

        Returns:
            True if shutdown was requested
        """
        return self._requested.wait(timeout)
