"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for LastSignal.

- Provides argparse-based CLI
- Loads configuration from file and environment
- Entry point for the application

============================================================
USAGE
============================================================
lastsignal run
lastsignal checkin
lastsignal status --json
lastsignal test
lastsignal whoop-auth --client-id ID --client-secret SECRET

============================================================
"""

from pathlib import Path
from typing import List, Optional
import argparse
import asyncio
import json
import logging
import os
import sys

from lastsignal import __version__
from lastsignal.channels.oauth import DEFAULT_CALLBACK_PORT, run_whoop_authentication
from lastsignal.config.loader import (
    DATA_DIR_ENV_VAR,
    EXAMPLE_CONFIG,
    load_config,
    resolve_config_path,
)
from lastsignal.config.models import DEFAULT_DATA_DIRECTORY, VALID_LOG_LEVELS, AppConfig
from lastsignal.core.exceptions import ConfigurationError, EscalationCompleteError, LastSignalError
from lastsignal.orchestrator.core import LastSignalApp, setup_logging


logger = logging.getLogger("lastsignal.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lastsignal",
        description="Dead-man's switch: asks you to check in, tells your people if you don't",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run         - Run the check-in / escalation loop
  checkin     - Record a check-in now and reset escalation tracking
  status      - Show the current lifecycle state
  test        - Health-check every configured output (nothing is sent)
  whoop-auth  - Authorize WHOOP activity as a check-in source
  init        - Write an example configuration file

Examples:
  %(prog)s run                              # Run the loop
  %(prog)s --config ./config.yaml status    # Status from a specific config
  %(prog)s --log-level debug test           # Verbose channel test
  %(prog)s whoop-auth --client-id ID --client-secret SECRET
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    global_group = parser.add_argument_group("Global Options")

    global_group.add_argument(
        "--config", "-c",
        type=str,
        metavar="FILE",
        default=None,
        help="Configuration file (default: $LASTSIGNAL_CONFIG or ~/.lastsignal/config.yaml)",
    )

    global_group.add_argument(
        "--log-level",
        type=str,
        choices=list(VALID_LOG_LEVELS),
        default=None,
        help="Override app.log_level from the configuration",
    )

    global_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Log output format (default: text)",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    run_parser = subparsers.add_parser("run", help="Run the check-in / escalation loop")
    run_parser.add_argument(
        "--single-cycle",
        action="store_true",
        help="Run a single cycle and exit (no loop)",
    )

    subparsers.add_parser("checkin", help="Record a manual check-in")

    status_parser = subparsers.add_parser("status", help="Show lifecycle state")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the status as JSON",
    )

    subparsers.add_parser("test", help="Health-check all configured outputs")

    whoop_parser = subparsers.add_parser("whoop-auth", help="Authorize WHOOP access")
    whoop_parser.add_argument(
        "--client-id",
        type=str,
        required=True,
        help="WHOOP developer application client id",
    )
    whoop_parser.add_argument(
        "--client-secret",
        type=str,
        required=True,
        help="WHOOP developer application client secret",
    )
    whoop_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_CALLBACK_PORT,
        help=f"Local callback server port (default: {DEFAULT_CALLBACK_PORT})",
    )
    whoop_parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        metavar="SECONDS",
        help="How long to wait for the browser redirect (default: 120)",
    )

    init_parser = subparsers.add_parser("init", help="Write an example configuration file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing configuration file",
    )

    return parser


# ============================================================
# COMMANDS
# ============================================================

async def _cmd_run(app: LastSignalApp, args: argparse.Namespace) -> int:
    if args.single_cycle:
        app.ensure_not_complete()
        result = await app.run_single_cycle()
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_OK if result.success else EXIT_ERROR
    await app.run_forever()
    return EXIT_OK


async def _cmd_checkin(app: LastSignalApp, args: argparse.Namespace) -> int:
    app.record_manual_checkin()
    print("Check-in recorded.")
    return EXIT_OK


async def _cmd_status(app: LastSignalApp, args: argparse.Namespace) -> int:
    snapshot = app.get_status_snapshot()
    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2))
    else:
        print(snapshot.render())
    return EXIT_OK


async def _cmd_test(app: LastSignalApp, args: argparse.Namespace) -> int:
    results = await app.test_all_channels()
    for row in results:
        mark = "OK  " if row.healthy else "FAIL"
        detail = f" ({row.error})" if row.error else ""
        print(f"  [{mark}] {row.tier:9s} {row.channel_name:20s} {row.recipient_id}{detail}")
    healthy = sum(1 for r in results if r.healthy)
    print(f"{healthy}/{len(results)} outputs healthy")
    return EXIT_OK if healthy == len(results) else EXIT_ERROR


_APP_COMMANDS = {
    "run": _cmd_run,
    "checkin": _cmd_checkin,
    "status": _cmd_status,
    "test": _cmd_test,
}


def _fallback_data_directory(args: argparse.Namespace) -> Path:
    """Data directory for commands that may run before a config exists."""
    try:
        return load_config(args.config).data_path
    except ConfigurationError:
        return Path(os.getenv(DATA_DIR_ENV_VAR) or DEFAULT_DATA_DIRECTORY).expanduser()


async def _cmd_whoop_auth(args: argparse.Namespace) -> int:
    data_directory = _fallback_data_directory(args)
    data_directory.mkdir(parents=True, exist_ok=True)
    await run_whoop_authentication(
        client_id=args.client_id,
        client_secret=args.client_secret,
        data_directory=data_directory,
        port=args.port,
        timeout_seconds=args.timeout,
    )
    return EXIT_OK


def _cmd_init(args: argparse.Namespace) -> int:
    path = resolve_config_path(args.config)
    if path.exists() and not args.force:
        print(f"Error: {path} already exists (use --force to overwrite)", file=sys.stderr)
        return EXIT_ERROR
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    print(f"Example configuration written to {path}")
    return EXIT_OK


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: Optional[AppConfig] = None) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments
        config: Pre-loaded configuration (loaded from args when None)

    Returns:
        Exit code
    """
    if args.command == "whoop-auth":
        return await _cmd_whoop_auth(args)

    if config is None:
        config = load_config(args.config)

    app = LastSignalApp(config)
    try:
        return await _APP_COMMANDS[args.command](app, args)
    finally:
        await app.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level or "info", args.log_format)

    if args.command == "init":
        return _cmd_init(args)

    config: Optional[AppConfig] = None
    try:
        if args.command != "whoop-auth":
            config = load_config(args.config)
            setup_logging(args.log_level or config.app.log_level, args.log_format)
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except EscalationCompleteError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_ERROR
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_ERROR
    except LastSignalError as e:
        logger.error(f"Fatal error: {e.to_log_format()}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
