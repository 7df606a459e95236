"""
Timer rules for the watchdog.

The reset timeout is chosen per record at arm time. Everything else that
shapes the timer (how long to watch a stopped resource, how long to back
off after a failed detonation, how many hiccups to tolerate) lives in
WatchdogRules.
"""

import math
import time
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class WatchdogRules:
    """
    Watchdog tunables. FROZEN - a running watchdog never changes them.
    """

    # ==========================================================================
    # DETONATION
    # ==========================================================================

    # Upper bound on the wait while a stopped resource is watched for a
    # restart (continuous mode). Each expiry re-issues the stop request.
    watch_timeout_seconds: int = 300

    # Minimum delay before retrying a failed detonation once the record is
    # gone and there is nothing left to wait on.
    retry_delay_seconds: int = 30

    # ==========================================================================
    # ARMING
    # ==========================================================================

    # How long a freshly spawned process waits for its record to appear
    arm_wait_seconds: float = 30.0
    arm_poll_seconds: float = 0.2

    # ==========================================================================
    # SHUTDOWN PROTOCOL
    # ==========================================================================

    # Time to wait for a defused process to exit after SIGTERM
    graceful_shutdown_timeout_seconds: int = 30

    # ==========================================================================
    # RARE CONDITIONS
    # ==========================================================================

    # Spurious wait failures tolerated before the process gives up
    max_rare_events: int = 10

    def __post_init__(self):
        for name in (
            "watch_timeout_seconds",
            "retry_delay_seconds",
            "arm_wait_seconds",
            "arm_poll_seconds",
            "graceful_shutdown_timeout_seconds",
            "max_rare_events",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")


# Default rules instance (use this everywhere)
DEFAULT_RULES = WatchdogRules()


def compute_poll_interval(reset_timeout: int) -> int:
    """
    Poll interval for a reset timeout.

    Roughly a third of the timeout, so every timeout window gets at least
    three looks at the record and one missed wake-up cannot detonate early.
    """
    if reset_timeout <= 0:
        raise ValueError(f"reset_timeout must be positive, got {reset_timeout!r}")
    return math.ceil((reset_timeout + 2) / 3)


def check_timer(seconds_since_reset: float, reset_timeout: int) -> tuple[bool, Optional[str]]:
    """Check whether the reset timeout has elapsed."""
    if seconds_since_reset >= reset_timeout:
        return True, (
            f"Reset timeout elapsed: {seconds_since_reset:.0f}s >= {reset_timeout}s"
        )
    return False, None


def is_timer_running(record, reset_timeout: int, now: Optional[float] = None) -> bool:
    """True while the record's last reset is within reset_timeout of now."""
    if now is None:
        now = time.time()
    expired, _ = check_timer(now - record.last_reset_time, reset_timeout)
    return not expired
