"""
Error taxonomy for the deadman switch.

Every failure surfaced to a caller derives from DeadmanError and carries
the process exit code the CLI should use. TransientControllerError and
RareConditionError are mostly raised and handled inside the watchdog
process itself.
"""

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_STOPPED = 2


class DeadmanError(Exception):
    """Base class for all deadman errors."""

    exit_code: int = EXIT_FAILURE


class ArgumentError(DeadmanError):
    """Malformed command or arguments. Reported together with usage help."""


class PreconditionError(DeadmanError):
    """The command cannot run against the current record state."""


class InvalidRecordError(PreconditionError):
    """The key does not refer to something that looks like a watchdog record."""


class AuthorizationError(DeadmanError):
    """Dry-run validation of the detonation action failed."""


class ControllerError(DeadmanError):
    """The resource controller could not complete a request."""


class TransientControllerError(ControllerError):
    """A stop/terminate call failed or returned an unexpected state."""


class ProcessTerminationError(DeadmanError):
    """A watchdog process did not exit within the allowed wait."""


class RareConditionError(DeadmanError):
    """Too many internal hiccups (e.g. spurious wait failures) were seen."""
