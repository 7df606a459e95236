"""
Deadman switch for cloud instances.

A watchdog keeps an instance alive only while clients keep resetting it.
Each armed watchdog is a SEPARATE background process with:
- One record file (the liveness signal)
- Its own controller credentials (profile)
- No shared memory with the clients resetting it

When resets stop for longer than the reset timeout, the watchdog:
- Stops the instance (control mode) and keeps it stopped, or
- Terminates the instance (own mode) and exits

This guarantees an instance leased to a client that crashes or
disconnects is never left running indefinitely.
"""

from deadman.commands import WatchdogCommands
from deadman.controller import ResourceController, ResourceState, WatchdogMode
from deadman.record import RecordStore, WatchdogRecord
from deadman.rules import DEFAULT_RULES, WatchdogRules

__all__ = [
    "DEFAULT_RULES",
    "RecordStore",
    "ResourceController",
    "ResourceState",
    "WatchdogCommands",
    "WatchdogMode",
    "WatchdogRecord",
    "WatchdogRules",
]
