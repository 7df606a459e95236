"""
Event-driven wake-ups for a single watchdog record.

The watchdog process sleeps until either the record is touched, moved or
deleted, or a bound expires, whichever comes first. Filesystem events come
from the watchdog library (inotify on Linux, FSEvents on macOS, polling
elsewhere). The bound makes a lost event cost at most one poll interval.
"""

import os
import threading
from pathlib import Path
from typing import Optional
import structlog

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

logger = structlog.get_logger(__name__)

# Opening or reading the record (opened, closed_no_write) is not a change
WAKE_EVENT_TYPES = frozenset({
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
})


class MonitorError(Exception):
    """The wait primitive failed (e.g. the observer thread died)."""


class _RecordEventHandler(FileSystemEventHandler):
    """Sets the wake flag when the record path is created, changed, moved or deleted."""

    def __init__(self, monitor: "RecordMonitor"):
        self.monitor = monitor

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in WAKE_EVENT_TYPES:
            return
        paths = {os.fsdecode(event.src_path)}
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            paths.add(os.fsdecode(dest_path))
        if self.monitor.record_path in paths:
            self.monitor.wake()


class RecordMonitor:
    """
    Wait for changes to one record file, with a timeout.

    Usage:
        monitor = RecordMonitor(store.path_for(resource_id))
        monitor.start()
        while True:
            monitor.clear()
            ...check the record...
            monitor.wait(poll_interval)

    clear() must be called BEFORE the record is read, never after, so a
    change landing between the read and the wait still wakes the waiter.
    """

    def __init__(self, record_path: Path):
        self.record_path = str(Path(record_path).absolute())
        self._watch_dir = str(Path(self.record_path).parent)
        self._event = threading.Event()
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        Path(self._watch_dir).mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_RecordEventHandler(self), self._watch_dir, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("record_monitor_started", path=self.record_path)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        if self._observer.is_alive():
            self._observer.join(timeout=5)
        self._observer = None

    def restart(self) -> None:
        """Replace a failed observer with a fresh one."""
        logger.warning("record_monitor_restarting", path=self.record_path)
        self.stop()
        self.start()

    def clear(self) -> None:
        self._event.clear()

    def wake(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """
        Block until a change is seen or timeout seconds pass.

        Returns:
            True if woken by an event, False on timeout

        Raises:
            MonitorError: The observer is not running
        """
        if self._observer is None or not self._observer.is_alive():
            raise MonitorError(f"observer for {self.record_path} is not running")
        return self._event.wait(timeout)
