"""
Command interface for the deadman switch.

Translates arm/reset/detonate/done/defuse/status into operations on the
record store and on watchdog processes. Every command is short and
synchronous; the only long-running piece is the watchdog process that
arm spawns.
"""

import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional
import psutil
import structlog

from deadman.alert_dispatcher import AlertDispatcher
from deadman.config import DeadmanConfig
from deadman.controller import ResourceController, ResourceState, WatchdogMode
from deadman.errors import (
    ArgumentError,
    AuthorizationError,
    PreconditionError,
    ProcessTerminationError,
)
from deadman.record import RecordStore, WatchdogRecord

logger = structlog.get_logger(__name__)

# Module run by spawned watchdog processes; also how status finds them
DAEMON_MODULE = "deadman.daemon"


@dataclass
class WatchdogStatus:
    """What status reports for one watchdog."""
    resource_id: str
    pid: Optional[int]
    alive: bool
    mode: Optional[str] = None
    seconds_since_reset: Optional[float] = None

    @property
    def orphaned(self) -> bool:
        return self.seconds_since_reset is not None and not self.alive

    def describe(self) -> str:
        parts = [self.resource_id]
        if self.mode:
            parts.append(self.mode)
        parts.append(f"pid={self.pid}" if self.pid else "pid=-")
        if self.orphaned:
            parts.append("orphaned")
        else:
            parts.append("alive" if self.alive else "dead")
        if self.seconds_since_reset is None:
            parts.append("no-record")
        else:
            parts.append(f"last-reset={self.seconds_since_reset:.0f}s-ago")
        return " ".join(parts)


class WatchdogSpawner:
    """Starts detached watchdog processes."""

    def __init__(self, config: DeadmanConfig):
        self.config = config

    def build_command(
        self,
        mode: WatchdogMode,
        resource_id: str,
        reset_timeout: int,
        profile: Optional[str],
    ) -> list[str]:
        rules = self.config.rules
        cmd = [
            sys.executable, "-m", DAEMON_MODULE,
            mode.value, resource_id, str(reset_timeout),
            "--record-dir", str(self.config.record_dir),
            "--aws-binary", self.config.aws_binary,
            "--aws-timeout", str(self.config.aws_timeout_seconds),
            "--watch-timeout", str(rules.watch_timeout_seconds),
            "--retry-delay", str(rules.retry_delay_seconds),
            "--arm-wait", str(rules.arm_wait_seconds),
            "--max-rare-events", str(rules.max_rare_events),
            "--log-level", self.config.log_level,
        ]
        if profile:
            cmd += ["--profile", profile]
        if self.config.aws_region:
            cmd += ["--region", self.config.aws_region]
        return cmd

    def __call__(
        self,
        mode: WatchdogMode,
        resource_id: str,
        reset_timeout: int,
        profile: Optional[str],
    ) -> int:
        """Spawn the process in its own session and return its pid."""
        log_file = self.config.log_file_for(resource_id)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(log_file, "a") as log:
            process = subprocess.Popen(
                self.build_command(mode, resource_id, reset_timeout, profile),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )

        logger.info("watchdog_spawned", resource_id=resource_id, pid=process.pid, log_file=str(log_file))
        return process.pid


class WatchdogCommands:
    """
    The operations callers use to drive watchdogs.

    Usage:
        commands = WatchdogCommands(config, controller)
        commands.arm(WatchdogMode.CONTROL, "i-0abc", 120)
        commands.reset("i-0abc")   # periodically, from each client
        commands.done("i-0abc")    # stop the resource and the watchdog
    """

    def __init__(
        self,
        config: DeadmanConfig,
        controller: ResourceController,
        store: Optional[RecordStore] = None,
        spawner: Optional[Callable[..., int]] = None,
        alerter: Optional[AlertDispatcher] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.controller = controller
        self.store = store or RecordStore(config.record_dir)
        self.spawner = spawner or WatchdogSpawner(config)
        self.alerter = alerter or AlertDispatcher(slack_webhook_url=config.slack_webhook_url)
        self.clock = clock or time.time

    # ==========================================================================
    # ARM
    # ==========================================================================

    def arm(
        self,
        mode: WatchdogMode,
        resource_id: str,
        reset_timeout: int,
        profile: Optional[str] = None,
    ) -> int:
        """
        Arm a watchdog for a resource.

        Validation happens before anything is spawned or written, so a
        failed arm leaves no state behind.

        Returns:
            pid of the spawned watchdog process

        Raises:
            ArgumentError: Bad timeout or resource id
            PreconditionError: Already armed, or resource state unavailable
            AuthorizationError: Dry run of the detonation action was denied
        """
        if isinstance(reset_timeout, bool) or not isinstance(reset_timeout, int) or reset_timeout <= 0:
            raise ArgumentError(f"reset_timeout must be a positive integer, got {reset_timeout!r}")
        self.config.validate_resource_id(resource_id)
        profile = profile or self.config.aws_profile

        if self.store.exists(resource_id):
            raise PreconditionError(f"A watchdog record for '{resource_id}' already exists")

        state = self.controller.describe(resource_id, profile)
        if state is ResourceState.UNKNOWN:
            raise PreconditionError(f"Cannot query the state of '{resource_id}'")
        logger.info("resource_state_checked", resource_id=resource_id, state=state.value)

        if not self.controller.dry_run_authorized(mode.action, resource_id, profile):
            raise AuthorizationError(
                f"Not authorized to {mode.action} '{resource_id}' (dry run failed)"
            )

        pid = self.spawner(mode, resource_id, reset_timeout, profile)
        try:
            self.store.create(resource_id, pid)
        except FileExistsError:
            # Lost the race against a concurrent arm; the spawned process is
            # still waiting for its record and exits on SIGTERM untouched.
            _signal_quietly(pid, signal.SIGTERM)
            raise PreconditionError(f"A watchdog record for '{resource_id}' appeared concurrently")

        logger.info(
            "watchdog_armed",
            resource_id=resource_id,
            mode=mode.value,
            reset_timeout=reset_timeout,
            pid=pid,
        )
        self.alerter.send_info(
            f"Watchdog armed for {resource_id} ({mode.value}, {reset_timeout}s)",
            resource_id=resource_id,
        )
        return pid

    # ==========================================================================
    # RECORD COMMANDS
    # ==========================================================================

    def reset(self, resource_id: str) -> bool:
        """
        Extend liveness. A no-op (returning False) if nothing is armed.
        """
        return self.store.touch(resource_id)

    def detonate(self, resource_id: str) -> None:
        """Expire the timer now; the watchdog detonates on its next look."""
        self.store.require(resource_id)
        try:
            self.store.backdate(resource_id)
        except FileNotFoundError:
            raise PreconditionError(f"Watchdog record for '{resource_id}' disappeared")
        logger.warning("watchdog_detonate_requested", resource_id=resource_id)

    def done(self, resource_id: str) -> None:
        """
        Delete the record. The watchdog detonates once more, then exits.
        """
        self.store.require(resource_id)
        if not self.store.delete(resource_id):
            raise PreconditionError(f"Watchdog record for '{resource_id}' disappeared")
        self.alerter.send_info(f"Watchdog for {resource_id} done", resource_id=resource_id)

    def defuse(self, resource_id: str) -> bool:
        """
        Ask the owning process to exit without touching the resource.

        WARNING: This can leave the resource running.

        Returns:
            True if a live process was stopped, False if it was already gone

        Raises:
            ProcessTerminationError: The process did not exit in time
        """
        record = self.store.require(resource_id)
        pid = record.owner_pid

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info("sigterm_sent", resource_id=resource_id, pid=pid)
        except ProcessLookupError:
            logger.warning("process_already_dead", resource_id=resource_id, pid=pid)
            self.store.release(resource_id, pid)
            return False
        except PermissionError:
            raise ProcessTerminationError(f"Permission denied signalling pid {pid}")

        timeout = self.config.rules.graceful_shutdown_timeout_seconds
        if not _wait_for_exit(pid, timeout):
            raise ProcessTerminationError(
                f"Watchdog pid {pid} for '{resource_id}' did not exit within {timeout}s"
            )

        logger.warning("watchdog_defused", resource_id=resource_id, pid=pid)
        return True

    # ==========================================================================
    # STATUS
    # ==========================================================================

    def status(self, resource_id: str) -> WatchdogStatus:
        """
        Status of one watchdog.

        Raises:
            InvalidRecordError: No record for the key
            PreconditionError: The record has no live process behind it
        """
        record = self.store.require(resource_id)
        status = self._status_for(record, find_watchdog_processes())
        if not status.alive:
            raise PreconditionError(
                f"No watchdog process for '{resource_id}' (pid {record.owner_pid} is gone, "
                f"last reset {status.seconds_since_reset:.0f}s ago)"
            )
        return status

    def list_status(self) -> list[WatchdogStatus]:
        """Every running watchdog process, plus orphaned records."""
        processes = find_watchdog_processes()
        statuses = []
        seen = set()

        for record in self.store.iter_records():
            statuses.append(self._status_for(record, processes))
            seen.add(record.owner_pid)

        for pid, (mode, resource_id) in sorted(processes.items()):
            if pid not in seen:
                statuses.append(WatchdogStatus(resource_id=resource_id, pid=pid, alive=True, mode=mode))

        return statuses

    def _status_for(self, record: WatchdogRecord, processes: dict) -> WatchdogStatus:
        mode, _ = processes.get(record.owner_pid, (None, None))
        return WatchdogStatus(
            resource_id=record.resource_id,
            pid=record.owner_pid,
            alive=record.owner_pid in processes,
            mode=mode,
            seconds_since_reset=record.seconds_since_reset(self.clock()),
        )


def find_watchdog_processes() -> dict[int, tuple[str, str]]:
    """Map pid -> (mode, resource_id) for every running watchdog process."""
    found = {}
    for proc in psutil.process_iter(["pid", "cmdline", "status"]):
        cmdline = proc.info.get("cmdline") or []
        if proc.info.get("status") == psutil.STATUS_ZOMBIE:
            continue
        try:
            idx = cmdline.index(DAEMON_MODULE)
            mode, resource_id = cmdline[idx + 1], cmdline[idx + 2]
        except (ValueError, IndexError):
            continue
        found[proc.info["pid"]] = (mode, resource_id)
    return found


def _wait_for_exit(pid: int, timeout: float) -> bool:
    """Wait for a process to exit, return True if it did."""
    try:
        psutil.Process(pid).wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except psutil.TimeoutExpired:
        return False
    return True


def _signal_quietly(pid: int, signum: int) -> None:
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        pass
