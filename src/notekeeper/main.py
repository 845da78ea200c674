#!/usr/bin/env python
"""Command line entry point for Notekeeper storage."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from notekeeper import __version__
from notekeeper.config import config
from notekeeper.exceptions import NotekeeperError
from notekeeper.models.db_models import init_db
from notekeeper.models.schema import StorageMode
from notekeeper.observability import configure_logging, metrics
from notekeeper.services.storage_mode import StorageModeController
from notekeeper.storage.entity_store import EntityStore
from notekeeper.transfer import export_to_file, import_from_file


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Notekeeper storage and sync")
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEKEEPER_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEKEEPER_LOG_LEVEL", "WARNING")
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Show storage mode, last sync and record counts")

    mode = commands.add_parser("mode", help="Switch storage mode")
    mode.add_argument("target", choices=[m.value for m in StorageMode])
    mode.add_argument("--webdav-url", help="WebDAV endpoint (remote-document)")
    mode.add_argument("--webdav-username")
    mode.add_argument("--webdav-password")
    mode.add_argument("--user-id", type=int, help="Authenticated user (remote-api)")
    mode.add_argument(
        "--token",
        help="Session token (remote-api)",
        default=config.api_token,
    )

    commands.add_parser("sync", help="Run a sync pass in the current remote mode")

    export = commands.add_parser("export", help="Export all data to a JSON file")
    export.add_argument("path")

    import_ = commands.add_parser("import", help="Replace all data from a JSON file")
    import_.add_argument("path")

    commands.add_parser("metrics", help="Show timing and error counts for recorded operations")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit():
    """Save metrics to disk on exit."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).debug("Metrics saved to disk on exit")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on exit: {e}")


def _credentials(args):
    if args.target == StorageMode.REMOTE_API.value and args.token:
        if args.user_id is None:
            raise SystemExit("error: --user-id is required with --token")
        return {"user_id": args.user_id, "token": args.token}
    if args.target == StorageMode.REMOTE_DOCUMENT.value and args.webdav_url:
        return {
            "url": args.webdav_url,
            "username": args.webdav_username,
            "password": args.webdav_password,
        }
    return None


def run_command(args, controller: StorageModeController) -> dict:
    """Execute one subcommand and return its JSON-ready result."""
    store = controller.store
    if args.command == "status":
        last_sync = controller.get_last_sync_time()
        return {
            "mode": controller.get_mode().value,
            "lastSync": last_sync.isoformat() if last_sync else None,
            "counts": store.load_dataset().counts(),
            "webdavConfigured": controller.webdav_settings is not None,
        }
    if args.command == "mode":
        mode = controller.request_mode_change(args.target, _credentials(args))
        return {"mode": mode.value}
    if args.command == "sync":
        report = controller.request_sync()
        return {
            "mode": controller.get_mode().value,
            "merge": report.to_dict() if report else None,
        }
    if args.command == "export":
        path = export_to_file(store, args.path)
        return {"exported": str(path)}
    if args.command == "import":
        dataset = import_from_file(store, args.path)
        return {"imported": dataset.counts()}
    if args.command == "metrics":
        return metrics.get_metrics()
    raise ValueError(f"Unknown command {args.command}")


def main(argv=None):
    """Run the Notekeeper command line."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)
    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        store = EntityStore(engine=init_db())
    except (NotekeeperError, SQLAlchemyError) as e:
        logger.error(f"Failed to open the local store: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        controller = StorageModeController(store)
        result = run_command(args, controller)
    except NotekeeperError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps({"error": e.to_dict()}, indent=2, default=str), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
