"""
deadman - keep a cloud instance alive only while clients keep saying so.

Usage:
    deadman own     INSTANCE_ID TIMEOUT [--profile PROFILE]
    deadman control INSTANCE_ID TIMEOUT [--profile PROFILE]
    deadman reset    INSTANCE_ID
    deadman detonate INSTANCE_ID
    deadman done     INSTANCE_ID
    deadman defuse   INSTANCE_ID
    deadman status   [INSTANCE_ID]
    deadman help
"""

import argparse
import sys
from pathlib import Path
from typing import Optional
import structlog
from dotenv import load_dotenv

from deadman.config import LOG_LEVELS, load_config
from deadman.controller import AwsCliController, WatchdogMode
from deadman.commands import WatchdogCommands
from deadman.errors import EXIT_FAILURE, EXIT_OK, ArgumentError, DeadmanError
from deadman.logging_setup import setup_logging

logger = structlog.get_logger(__name__)

HELP_EPILOG = """
Commands:
    own INSTANCE_ID TIMEOUT
        Arm a one-shot watchdog. If TIMEOUT seconds pass without a reset,
        the instance is TERMINATED and the watchdog exits.

    control INSTANCE_ID TIMEOUT
        Arm a continuous watchdog. If TIMEOUT seconds pass without a reset,
        the instance is STOPPED. The watchdog keeps running and stops the
        instance again if it is restarted without a reset.

    reset INSTANCE_ID
        Extend liveness. Succeeds silently if no watchdog is armed.

    detonate INSTANCE_ID
        Expire the timer now. The watchdog acts within one poll interval.

    done INSTANCE_ID
        Delete the record. The watchdog stops/terminates the instance
        immediately and exits.

    defuse INSTANCE_ID
        Make the watchdog exit WITHOUT touching the instance.
        WARNING: this can leave the instance running. It is an escape
        hatch for debugging, not for normal use.

    status [INSTANCE_ID]
        Show one watchdog, or list all of them.

Several independent watchdogs (different ids) may protect the same
instance; it keeps running while ANY of them is being reset.

Exit status: 0 success, 1 failure.
"""


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting with 2."""

    def error(self, message):
        raise ArgumentError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="deadman",
        description="Dead-man's switch for cloud instances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--record-dir", help="Directory holding watchdog records")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", parser_class=_Parser)

    for mode in WatchdogMode:
        arm = subparsers.add_parser(mode.value, help=f"arm a watchdog ({mode.action} on timeout)")
        arm.add_argument("resource_id")
        arm.add_argument("reset_timeout", type=int)
        arm.add_argument("--profile", help="AWS credentials profile")

    for name in ("reset", "detonate", "done", "defuse"):
        cmd = subparsers.add_parser(name)
        cmd.add_argument("resource_id")

    status = subparsers.add_parser("status")
    status.add_argument("resource_id", nargs="?")

    subparsers.add_parser("help")
    return parser


def run(args: argparse.Namespace, commands: WatchdogCommands) -> int:
    """Dispatch a parsed command. Status output goes to stdout."""
    if args.command in (WatchdogMode.OWN.value, WatchdogMode.CONTROL.value):
        if args.reset_timeout <= 0:
            raise ArgumentError(f"TIMEOUT must be a positive integer, got {args.reset_timeout}")
        pid = commands.arm(
            WatchdogMode.parse(args.command),
            args.resource_id,
            args.reset_timeout,
            args.profile,
        )
        print(pid)

    elif args.command == "reset":
        commands.reset(args.resource_id)

    elif args.command == "detonate":
        commands.detonate(args.resource_id)

    elif args.command == "done":
        commands.done(args.resource_id)

    elif args.command == "defuse":
        print(
            f"warning: defusing leaves {args.resource_id} in its current state",
            file=sys.stderr,
        )
        commands.defuse(args.resource_id)

    elif args.command == "status":
        if args.resource_id:
            print(commands.status(args.resource_id).describe())
        else:
            for status in commands.list_status():
                print(status.describe())

    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the deadman console script."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except ArgumentError as e:
        parser.print_usage(sys.stderr)
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code

    if args.command in (None, "help"):
        parser.print_help()
        return EXIT_OK

    load_dotenv()

    try:
        config = load_config(args.config)
        if args.record_dir:
            config.record_dir = Path(args.record_dir).expanduser()
        if args.log_level:
            config.log_level = args.log_level
        setup_logging(config.log_level)

        controller = AwsCliController(
            aws_binary=config.aws_binary,
            region=config.aws_region,
            default_profile=config.aws_profile,
            timeout_seconds=config.aws_timeout_seconds,
        )
        return run(args, WatchdogCommands(config, controller))

    except ArgumentError as e:
        parser.print_usage(sys.stderr)
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    except DeadmanError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    except Exception as e:
        logger.exception("command_crashed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
