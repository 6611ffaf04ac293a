"""SiteWatch - HTTP(S) site monitoring with anomaly detection and webhook alerts."""

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


def _load_config_or_exit(path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_database(config):
    """Open the database, sync configured sites and seed the webhook URL."""
    from .database import DatabaseError, init_db, set_setting, sync_sites
    from .notifier import WEBHOOK_URL_KEY

    try:
        conn = init_db(config.database.path)
        site_ids = sync_sites(conn, config.sites)
        if config.alerts.webhook_url:
            set_setting(conn, WEBHOOK_URL_KEY, config.alerts.webhook_url)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    logger.info("Database ready at %s (%d configured sites)", config.database.path, len(site_ids))
    return conn


def _build_pipeline(config, conn):
    from .detector import AnomalyDetector
    from .notifier import Dispatcher
    from .scheduler import Scheduler

    dispatcher = Dispatcher(
        conn,
        rate_limit_seconds=config.alerts.rate_limit_seconds,
        allow_private=config.alerts.allow_private,
    )
    scheduler = Scheduler(config, conn, AnomalyDetector(conn), dispatcher)
    return scheduler, dispatcher


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the monitoring service."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("SiteWatch %s starting...", __version__)

    # 1. Load configuration and open the database
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)
    conn = _open_database(config)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 3. Start components
    scheduler, dispatcher = _build_pipeline(config, conn)

    try:
        scheduler.start()
        logger.info("All components started, waiting for shutdown signal...")

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup - stop all components
        logger.info("Shutting down components...")

        scheduler.stop()
        dispatcher.close()

        conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_check_now(args: argparse.Namespace) -> None:
    """Execute the check-now command - run a single tick and exit."""
    _setup_logging(args.verbose)

    config = _load_config_or_exit(args.config)
    conn = _open_database(config)
    scheduler, dispatcher = _build_pipeline(config, conn)

    try:
        outcomes = scheduler.run_tick()
    finally:
        dispatcher.close()
        conn.close()

    failed = sum(1 for ok in outcomes.values() if not ok)
    print(f"Checked {len(outcomes)} site(s), {failed} pipeline failure(s).")

    if failed:
        sys.exit(1)


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old checks and anomalies from the database."""
    from pathlib import Path

    from .config import ConfigError, load_config
    from .database import DatabaseError, cleanup_old_records, init_db

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Validate database exists
    if not Path(config.database.path).exists():
        print(f"Error: Database not found at {config.database.path}")
        sys.exit(1)

    # 3. Determine retention days
    if args.retention_days is not None:
        if args.retention_days < 0:
            print("Error: retention-days must be a non-negative integer")
            sys.exit(1)
        retention_days = args.retention_days
    else:
        retention_days = config.database.retention_days

    # 4. Perform cleanup
    try:
        conn = init_db(config.database.path)
        try:
            deleted_checks, deleted_anomalies = cleanup_old_records(conn, retention_days)
        finally:
            conn.close()
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(
        f"Deleted {deleted_checks} check records and {deleted_anomalies} anomalies "
        f"older than {retention_days} days."
    )


def _cmd_test_alert(args: argparse.Namespace) -> None:
    """Execute the test-alert command - verify webhook configuration."""
    from .database import get_setting
    from .notifier import WEBHOOK_URL_KEY, Dispatcher
    from .security import mask_url

    config = _load_config_or_exit(args.config)
    conn = _open_database(config)

    try:
        webhook_url = get_setting(conn, WEBHOOK_URL_KEY)
        if not webhook_url:
            print("Error: No webhook URL configured")
            sys.exit(1)

        dispatcher = Dispatcher(conn, allow_private=config.alerts.allow_private)
        print(f"Testing webhook {mask_url(webhook_url)}...")
        success = dispatcher.send_test_alert()
        dispatcher.close()
    finally:
        conn.close()

    print("✓ SUCCESS" if success else "✗ FAILED")
    if not success:
        sys.exit(1)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main() -> None:
    """Main entry point for the sitewatch package."""
    parser = argparse.ArgumentParser(
        description="SiteWatch - HTTP(S) site monitoring with anomaly detection"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"sitewatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the monitoring service (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check-now subcommand
    check_parser = subparsers.add_parser(
        "check-now",
        help="Check every due site once and exit",
    )
    _add_config_argument(check_parser)
    check_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check_now)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old checks and anomalies from the database",
    )
    _add_config_argument(clean_parser)
    clean_parser.add_argument(
        "--retention-days",
        type=int,
        help="Delete records older than this many days (overrides config)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    # Test-alert subcommand
    test_alert_parser = subparsers.add_parser(
        "test-alert",
        help="Send a test payload to the configured webhook",
    )
    _add_config_argument(test_alert_parser)
    test_alert_parser.set_defaults(func=_cmd_test_alert)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
