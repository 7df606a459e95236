"""
Resource controller for the watchdog.

The watchdog only ever needs four things from the cloud: the current
state of a resource, a stop, a terminate, and a dry run proving it is
allowed to do the latter two. ResourceController is that capability;
AwsCliController implements it for EC2 instances through the `aws` CLI,
so credentials and profiles resolve exactly as they do for an operator.
"""

import json
import subprocess
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional
import structlog

from deadman.errors import ArgumentError, TransientControllerError

logger = structlog.get_logger(__name__)


class ResourceState(Enum):
    """Lifecycle states of a resource."""
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ResourceState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class WatchdogMode(Enum):
    """
    Fixed at arm time.

    OWN: one-shot. Detonation terminates the resource and ends monitoring.
    CONTROL: continuous. Detonation stops the resource and monitoring goes
    on, re-stopping the resource if it is restarted while still detonated.
    """
    OWN = "own"
    CONTROL = "control"

    @classmethod
    def parse(cls, value: str) -> "WatchdogMode":
        try:
            return cls(value)
        except ValueError:
            raise ArgumentError(f"Unknown mode '{value}' (expected 'own' or 'control')")

    @property
    def action(self) -> str:
        return "terminate" if self is WatchdogMode.OWN else "stop"

    @property
    def expected_states(self) -> frozenset:
        """Resource states that count as a successful detonation."""
        if self is WatchdogMode.OWN:
            return TERMINATE_STATES
        return STOP_STATES


STOP_STATES = frozenset({ResourceState.STOPPING, ResourceState.STOPPED})
TERMINATE_STATES = frozenset({ResourceState.SHUTTING_DOWN, ResourceState.TERMINATED})
DOWN_STATES = STOP_STATES | TERMINATE_STATES


class ResourceController(ABC):
    """Lifecycle actions on an external resource."""

    @abstractmethod
    def describe(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        """Current state, or UNKNOWN if it cannot be queried."""

    @abstractmethod
    def stop(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        """Request a stop. Returns the state reported right after the request."""

    @abstractmethod
    def terminate(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        """Request termination. Returns the state reported right after the request."""

    @abstractmethod
    def dry_run_authorized(
        self, action: str, resource_id: str, profile: Optional[str] = None
    ) -> bool:
        """True if `action` ("stop" or "terminate") would be permitted."""

    def detonate(
        self, mode: WatchdogMode, resource_id: str, profile: Optional[str] = None
    ) -> ResourceState:
        """Run the mode's detonation action."""
        if mode is WatchdogMode.OWN:
            return self.terminate(resource_id, profile)
        return self.stop(resource_id, profile)


class AwsCliController(ResourceController):
    """
    EC2 instance control through the aws CLI.

    This is the watchdog's "loaded gun". stop and terminate are issued
    without confirmation; use dry_run_authorized before arming.
    """

    _ACTION_COMMANDS = {
        "stop": ("stop-instances", "StoppingInstances"),
        "terminate": ("terminate-instances", "TerminatingInstances"),
    }

    def __init__(
        self,
        aws_binary: str = "aws",
        region: Optional[str] = None,
        default_profile: Optional[str] = None,
        timeout_seconds: float = 60.0,
    ):
        """
        Initialize the controller.

        Args:
            aws_binary: Path or name of the aws executable
            region: Region passed as --region (None = CLI default)
            default_profile: Profile used when a call does not name one
            timeout_seconds: Per-call timeout for the CLI
        """
        self.aws_binary = aws_binary
        self.region = region
        self.default_profile = default_profile
        self.timeout_seconds = timeout_seconds

    def describe(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        try:
            output = self._run(
                ["describe-instances", "--instance-ids", resource_id], profile
            )
            name = output["Reservations"][0]["Instances"][0]["State"]["Name"]
        except TransientControllerError as e:
            logger.error("describe_failed", resource_id=resource_id, error=str(e))
            return ResourceState.UNKNOWN
        except (KeyError, IndexError, TypeError) as e:
            logger.error("describe_unexpected_output", resource_id=resource_id, error=str(e))
            return ResourceState.UNKNOWN
        return ResourceState.parse(name)

    def stop(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        logger.critical("controller_stopping_resource", resource_id=resource_id)
        return self._change_state("stop", resource_id, profile)

    def terminate(self, resource_id: str, profile: Optional[str] = None) -> ResourceState:
        logger.critical("controller_terminating_resource", resource_id=resource_id)
        return self._change_state("terminate", resource_id, profile)

    def dry_run_authorized(
        self, action: str, resource_id: str, profile: Optional[str] = None
    ) -> bool:
        """
        Ask EC2 whether the action is permitted without performing it.

        A permitted dry run "fails" with DryRunOperation; anything else
        (UnauthorizedOperation, unknown instance, no credentials) is a no.
        """
        command, _ = self._command_for(action)
        result = self._invoke(
            [command, "--dry-run", "--instance-ids", resource_id], profile
        )
        authorized = "DryRunOperation" in result.stderr
        if not authorized:
            logger.warning(
                "dry_run_denied",
                action=action,
                resource_id=resource_id,
                stderr=result.stderr.strip()[:500],
            )
        return authorized

    def _change_state(self, action: str, resource_id: str, profile: Optional[str]) -> ResourceState:
        command, result_key = self._command_for(action)
        output = self._run([command, "--instance-ids", resource_id], profile)
        try:
            name = output[result_key][0]["CurrentState"]["Name"]
        except (KeyError, IndexError, TypeError):
            raise TransientControllerError(
                f"Unexpected {command} output for {resource_id}: {str(output)[:200]}"
            )
        state = ResourceState.parse(name)
        logger.info("controller_state_changed", action=action, resource_id=resource_id, state=state.value)
        return state

    def _command_for(self, action: str) -> tuple[str, str]:
        try:
            return self._ACTION_COMMANDS[action]
        except KeyError:
            raise ArgumentError(f"Unknown controller action '{action}'")

    def _run(self, args: list[str], profile: Optional[str]) -> dict:
        """Run an ec2 subcommand and decode its JSON output."""
        result = self._invoke(args, profile)
        if result.returncode != 0:
            raise TransientControllerError(
                f"aws ec2 {args[0]} exited {result.returncode}: {result.stderr.strip()[:500]}"
            )
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise TransientControllerError(f"aws ec2 {args[0]} returned invalid JSON: {e}")

    def _invoke(self, args: list[str], profile: Optional[str]) -> subprocess.CompletedProcess:
        cmd = [self.aws_binary, "ec2", *args, "--output", "json"]
        profile = profile or self.default_profile
        if profile:
            cmd += ["--profile", profile]
        if self.region:
            cmd += ["--region", self.region]

        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            raise TransientControllerError(f"aws CLI not found: {self.aws_binary}")
        except subprocess.TimeoutExpired:
            raise TransientControllerError(
                f"aws ec2 {args[0]} timed out after {self.timeout_seconds}s"
            )
