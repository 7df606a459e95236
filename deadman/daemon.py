"""
Watchdog process.

One process per armed record. It waits for the record to appear, then
watches the record's modification time. Once the reset timeout passes
without a reset, or the record is deleted, it detonates: the resource is
stopped (control mode) or terminated (own mode).

State machine:

    WAITING_FOR_ARM -> MONITORING -> DETONATING
        own:      -> TERMINATED
        control:  -> STOPPED_WATCHING -> MONITORING (-> DETONATING again ...)
                  -> TERMINATED once the record has been deleted

Key principles:
- A failed detonation is never given up on; it is retried after a delay
- Deleting the record is the authoritative "detonate and exit" signal
- SIGTERM (defuse) releases the record WITHOUT touching the resource
"""

import os
import sys
import time
from enum import Enum
from typing import Callable, Optional
import structlog

from deadman.alert_dispatcher import AlertDispatcher
from deadman.controller import (
    DOWN_STATES,
    AwsCliController,
    ResourceController,
    WatchdogMode,
)
from deadman.errors import (
    EXIT_FAILURE,
    EXIT_NOT_STOPPED,
    EXIT_OK,
    ArgumentError,
    ControllerError,
    DeadmanError,
    InvalidRecordError,
    RareConditionError,
)
from deadman.logging_setup import setup_logging
from deadman.monitor import MonitorError, RecordMonitor
from deadman.record import RecordStore, WatchdogRecord
from deadman.rules import (
    DEFAULT_RULES,
    WatchdogRules,
    check_timer,
    compute_poll_interval,
    is_timer_running,
)
from deadman.shutdown import GracefulShutdownHandler

logger = structlog.get_logger(__name__)


class WatchdogState(Enum):
    WAITING_FOR_ARM = "waiting_for_arm"
    MONITORING = "monitoring"
    DETONATING = "detonating"
    STOPPED_WATCHING = "stopped_watching"
    TERMINATED = "terminated"


class WatchdogDaemon:
    """
    The monitoring loop for one watchdog record.

    The process is single-threaded apart from the filesystem observer
    feeding RecordMonitor. It only ever blocks inside _wait() (bounded,
    woken by record changes and shutdown requests) and in the fallback
    delays, which a shutdown request also cuts short.
    """

    def __init__(
        self,
        resource_id: str,
        mode: WatchdogMode,
        reset_timeout: int,
        store: RecordStore,
        controller: ResourceController,
        rules: WatchdogRules = DEFAULT_RULES,
        monitor: Optional[RecordMonitor] = None,
        alerter: Optional[AlertDispatcher] = None,
        shutdown: Optional[GracefulShutdownHandler] = None,
        profile: Optional[str] = None,
        pid: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        """
        Initialize the watchdog.

        Args:
            resource_id: Record key, which is also the resource id
            mode: Detonation behavior, fixed for the record's lifetime
            reset_timeout: Seconds without a reset before detonation
            store: Record store holding this watchdog's record
            controller: Resource controller used to stop/terminate
            rules: Timer tunables
            monitor: Wake-up source (defaults to a RecordMonitor on the record)
            alerter: Alert dispatcher
            shutdown: Cancellation token (defaults to a signal-backed one)
            profile: Credentials profile handed to the controller
            pid: Identifier written into the record by the arming command
            clock: Wall clock, in the same epoch as file modification times
            sleep: Fallback delay (defaults to a wait that a shutdown request cuts short)
        """
        if not isinstance(reset_timeout, int) or reset_timeout <= 0:
            raise ArgumentError(f"reset_timeout must be a positive integer, got {reset_timeout!r}")

        self.resource_id = resource_id
        self.mode = mode
        self.reset_timeout = reset_timeout
        self.poll_interval = compute_poll_interval(reset_timeout)
        self.store = store
        self.controller = controller
        self.rules = rules
        self.monitor = monitor or RecordMonitor(store.path_for(resource_id))
        self.alerter = alerter or AlertDispatcher()
        self.shutdown = shutdown or GracefulShutdownHandler()
        self.shutdown.register_wakeup(self.monitor.wake)
        self.profile = profile
        self.pid = pid if pid is not None else os.getpid()
        self.clock = clock
        self.sleep = sleep or self.shutdown.wait

        self.state = WatchdogState.WAITING_FOR_ARM
        self.rare_events = 0
        self.detonations = 0
        self._reset_since_detonation = True

        self.log = logger.bind(resource_id=resource_id, mode=mode.value, pid=self.pid)

    def run(self) -> int:
        """
        Run until the watchdog is finished.

        Returns:
            Process exit status
        """
        self.log.info(
            "watchdog_starting",
            reset_timeout=self.reset_timeout,
            poll_interval=self.poll_interval,
        )

        # Watch before looking, so nothing between the two is missed
        self.monitor.start()
        try:
            if not self._wait_for_arm():
                return EXIT_FAILURE

            while True:
                self._monitor_until_expired()

                if self.shutdown.should_shutdown():
                    return self._finish_defused()

                if self._detonate():
                    return EXIT_OK
        finally:
            self.monitor.stop()

    # ==========================================================================
    # STATES
    # ==========================================================================

    def _wait_for_arm(self) -> bool:
        """Wait for the arming command to write our pid into the record."""
        deadline = self.clock() + self.rules.arm_wait_seconds

        while not self.shutdown.should_shutdown():
            try:
                record = self.store.read(self.resource_id)
            except InvalidRecordError as e:
                self.log.warning("record_unreadable_while_arming", error=str(e))
                record = None

            if record is not None:
                if record.owner_pid == self.pid:
                    self.log.info("watchdog_armed")
                    return True
                self.log.error("record_owned_by_other_process", owner_pid=record.owner_pid)
                return False

            if self.clock() >= deadline:
                self.log.error("record_never_created", waited_seconds=self.rules.arm_wait_seconds)
                return False

            self.sleep(self.rules.arm_poll_seconds)

        self.log.info("shutdown_before_armed")
        return False

    def _monitor_until_expired(self) -> None:
        """Return once the timer expires, the record goes away, or shutdown is requested."""
        self.state = WatchdogState.MONITORING

        while not self.shutdown.should_shutdown():
            self.monitor.clear()
            record = self._read_own_record()
            if record is None:
                self.log.warning("record_removed")
                return

            now = self.clock()
            if not is_timer_running(record, self.reset_timeout, now):
                _, reason = check_timer(record.seconds_since_reset(now), self.reset_timeout)
                self.log.warning("timer_expired", reason=reason)
                return

            self._reset_since_detonation = True
            self.log.debug(
                "timer_running",
                seconds_since_reset=round(record.seconds_since_reset(now), 1),
            )
            self._wait(self.poll_interval)

    def _detonate(self) -> bool:
        """
        Stop or terminate the resource.

        Returns:
            True when the watchdog is finished and the process should exit
        """
        self.state = WatchdogState.DETONATING
        self.detonations += 1
        action = self.mode.action
        self.log.critical("detonating", action=action, detonations=self.detonations)

        try:
            state = self.controller.detonate(self.mode, self.resource_id, self.profile)
        except ControllerError as e:
            return self._detonation_failed(f"{action} failed: {e}")

        if state not in self.mode.expected_states:
            return self._detonation_failed(f"{action} left the resource {state.value}")

        self.log.info("detonation_succeeded", resource_state=state.value)
        if self._reset_since_detonation:
            self.alerter.send_critical(
                f"Watchdog timeout: {self.resource_id} is {state.value}",
                resource_id=self.resource_id,
                action=action,
            )
            self._reset_since_detonation = False

        if self.mode is WatchdogMode.OWN or not self._record_present():
            self.store.release(self.resource_id, self.pid)
            self.state = WatchdogState.TERMINATED
            self.log.info("watchdog_finished")
            return True

        # Control mode: keep the resource stopped while the record stays expired
        self.state = WatchdogState.STOPPED_WATCHING
        self.log.info("watching_stopped_resource", watch_timeout=self.rules.watch_timeout_seconds)
        self._wait(self.rules.watch_timeout_seconds)
        return False

    def _detonation_failed(self, reason: str) -> bool:
        """Report a failed detonation and back off before the retry."""
        self.log.error("detonation_failed", reason=reason)
        self.alerter.send_warning(
            f"Watchdog for {self.resource_id} could not {self.mode.action} it: {reason}",
            resource_id=self.resource_id,
        )

        # Drop stale wake-ups so the delay below is a real one
        self.monitor.clear()
        if self._record_present():
            self._wait(self.poll_interval)
        else:
            self.sleep(self.rules.retry_delay_seconds)
        return False

    def _finish_defused(self) -> int:
        """Release the record after SIGTERM and report what was left behind."""
        self.state = WatchdogState.TERMINATED
        released = self.store.release(self.resource_id, self.pid)
        resource_state = self.controller.describe(self.resource_id, self.profile)

        self.log.warning(
            "watchdog_defused",
            signal=self.shutdown.signal_name,
            record_released=released,
            resource_state=resource_state.value,
        )
        self.alerter.send_warning(
            f"Watchdog for {self.resource_id} defused; resource is {resource_state.value}",
            resource_id=self.resource_id,
        )

        if resource_state in DOWN_STATES:
            return EXIT_OK
        self.log.warning("resource_left_running", resource_state=resource_state.value)
        return EXIT_NOT_STOPPED

    # ==========================================================================
    # HELPERS
    # ==========================================================================

    def _read_own_record(self) -> Optional[WatchdogRecord]:
        """The record if it exists and is still ours, else None."""
        try:
            record = self.store.read(self.resource_id)
        except InvalidRecordError as e:
            self.log.warning("record_unreadable", error=str(e))
            return None

        if record is not None and record.owner_pid != self.pid:
            self.log.warning("record_taken_over", owner_pid=record.owner_pid)
            return None
        return record

    def _record_present(self) -> bool:
        return self._read_own_record() is not None

    def _wait(self, timeout: float) -> bool:
        """Bounded wait for a record change. Counts and survives wait failures."""
        try:
            return self.monitor.wait(timeout)
        except MonitorError as e:
            self.rare_events += 1
            self.log.warning("rare_condition", error=str(e), count=self.rare_events)
            if self.rare_events > self.rules.max_rare_events:
                raise RareConditionError(
                    f"{self.rare_events} rare conditions, last: {e}"
                )

        try:
            self.monitor.restart()
        except OSError as e:
            self.log.error("record_monitor_restart_failed", error=str(e))
        self.sleep(min(timeout, self.rules.retry_delay_seconds))
        return False


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for a spawned watchdog process."""
    import argparse

    parser = argparse.ArgumentParser(description="Deadman switch watchdog process")
    parser.add_argument("mode", choices=[m.value for m in WatchdogMode])
    parser.add_argument("resource_id")
    parser.add_argument("reset_timeout", type=int)
    parser.add_argument("--record-dir", required=True)
    parser.add_argument("--profile")
    parser.add_argument("--aws-binary", default="aws")
    parser.add_argument("--region")
    parser.add_argument("--aws-timeout", type=float, default=60.0)
    parser.add_argument("--watch-timeout", type=int, default=DEFAULT_RULES.watch_timeout_seconds)
    parser.add_argument("--retry-delay", type=int, default=DEFAULT_RULES.retry_delay_seconds)
    parser.add_argument("--arm-wait", type=float, default=DEFAULT_RULES.arm_wait_seconds)
    parser.add_argument("--max-rare-events", type=int, default=DEFAULT_RULES.max_rare_events)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    try:
        rules = WatchdogRules(
            watch_timeout_seconds=args.watch_timeout,
            retry_delay_seconds=args.retry_delay,
            arm_wait_seconds=args.arm_wait,
            max_rare_events=args.max_rare_events,
        )
        controller = AwsCliController(
            aws_binary=args.aws_binary,
            region=args.region,
            timeout_seconds=args.aws_timeout,
        )
        daemon = WatchdogDaemon(
            resource_id=args.resource_id,
            mode=WatchdogMode.parse(args.mode),
            reset_timeout=args.reset_timeout,
            store=RecordStore(args.record_dir),
            controller=controller,
            rules=rules,
            profile=args.profile,
        )
        daemon.shutdown.install()
        exit_code = daemon.run()
    except RareConditionError as e:
        logger.critical("watchdog_giving_up", resource_id=args.resource_id, error=str(e))
        exit_code = e.exit_code
    except (DeadmanError, ValueError) as e:
        logger.error("watchdog_failed", resource_id=args.resource_id, error=str(e))
        exit_code = EXIT_FAILURE
    except Exception as e:
        logger.exception("watchdog_crashed", resource_id=args.resource_id, error=str(e))
        exit_code = EXIT_FAILURE

    logger.info("watchdog_exiting", resource_id=args.resource_id, exit_code=exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
