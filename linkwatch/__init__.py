"""linkwatch - On-demand URL reachability checks with history and statistics."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(config_path: Optional[str]):
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_db_or_exit(db_path: str):
    from .database import StorageError, init_db

    try:
        return init_db(db_path)
    except StorageError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the API server and retention sweeper."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("linkwatch %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ApiServer
    from .checker import Checker
    from .sweeper import RetentionSweeper

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    if args.config:
        logger.info("Configuration loaded from %s", args.config)

    # 2. Initialize database
    db_conn = _open_db_or_exit(config.database.path)
    logger.info("Database initialized at %s", config.database.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    checker = Checker(db_conn, config.checker, config.database)
    sweeper: Optional[RetentionSweeper] = None
    api_server: Optional[ApiServer] = None

    try:
        if config.sweeper.enabled:
            sweeper = RetentionSweeper(
                db_conn,
                interval_hours=config.sweeper.interval_hours,
                retention_days=config.database.retention_days,
            )
            sweeper.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, checker, db_conn)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                sys.exit(1)

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        if api_server is not None:
            api_server.stop()

        if sweeper is not None:
            sweeper.stop()

        checker.close()
        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - check URLs once and print the results."""
    _setup_logging(args.verbose)

    from .checker import Checker
    from .database import StorageError
    from .validation import ValidationError, validate_url_list

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)
    checker = Checker(db_conn, config.checker, config.database)

    try:
        if len(args.urls) == 1:
            outcomes = [checker.check_single(args.urls[0])]
        else:
            urls = validate_url_list(args.urls, config.api.max_urls_per_request)
            outcomes = checker.check_batch(urls).results
    except ValidationError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        checker.close()
        db_conn.close()

    for outcome in outcomes:
        if outcome.is_broken:
            detail = outcome.error
            if outcome.status_code is not None:
                detail = f"{outcome.status_code} {detail}"
            print(f"✗ BROKEN  {outcome.url} ({detail})")
        else:
            print(f"✓ WORKING {outcome.url} ({outcome.status_code}, {outcome.response_time_ms}ms)")

    broken = sum(1 for outcome in outcomes if outcome.is_broken)
    print(f"\nURL check completed - {len(outcomes) - broken} working, {broken} broken")

    if broken:
        sys.exit(2)


def _cmd_stats(args: argparse.Namespace) -> None:
    """Execute the stats command - print statistics over the stored history."""
    from .database import StorageError, get_statistics

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        stats = get_statistics(db_conn)
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    last_check = stats.last_check.isoformat() if stats.last_check else "never"
    print(f"Total checks:          {stats.total_checks}")
    print(f"URLs checked:          {stats.total_urls}")
    print(f"Working:               {stats.working_urls}")
    print(f"Broken:                {stats.broken_urls}")
    print(f"Average response time: {stats.average_response_time}ms")
    print(f"Last check:            {last_check}")
    print(f"Checks today:          {stats.checks_today}")
    print(f"Checks this week:      {stats.checks_this_week}")
    print(f"Checks this month:     {stats.checks_this_month}")


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old records from the database."""
    from pathlib import Path

    from .database import StorageError, cleanup_old_records, delete_all_records

    # 1. Load configuration
    config = _load_config_or_exit(args.config)

    # 2. Validate database exists
    db_path = Path(config.database.path)
    if not db_path.exists():
        print(f"Error: Database not found at {config.database.path}")
        sys.exit(1)

    # 3. Determine retention days
    if args.all:
        retention_days = None  # Delete all
    elif args.retention_days is not None:
        if args.retention_days < 0:
            print("Error: retention-days must be a non-negative integer")
            sys.exit(1)
        retention_days = args.retention_days
    else:
        retention_days = config.database.retention_days

    # 4. Connect to database and perform cleanup
    db_conn = _open_db_or_exit(config.database.path)
    try:
        if retention_days is None:
            observations, batches = delete_all_records(db_conn)
            print(f"Deleted all {observations} observations and {batches} batch records.")
        else:
            observations, batches = cleanup_old_records(db_conn, retention_days)
            print(
                f"Deleted {observations} observations and {batches} batch records "
                f"older than {retention_days} days."
            )
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to YAML configuration file (default: built-in defaults)",
    )


def main() -> None:
    """Main entry point for the linkwatch package."""
    parser = argparse.ArgumentParser(
        description="linkwatch - On-demand URL reachability checks with history and statistics"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"linkwatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the API server and retention sweeper (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Check one or more URLs and record the results",
    )
    _add_config_argument(check_parser)
    check_parser.add_argument(
        "urls",
        nargs="+",
        help="URLs to check",
    )
    check_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check)

    # Stats subcommand
    stats_parser = subparsers.add_parser(
        "stats",
        help="Show statistics over recorded checks",
    )
    _add_config_argument(stats_parser)
    stats_parser.set_defaults(func=_cmd_stats)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old records from the database",
    )
    _add_config_argument(clean_parser)
    clean_parser.add_argument(
        "--retention-days",
        type=int,
        help="Delete records older than this many days (overrides config)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete all records (ignores retention_days)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
