#!/usr/bin/env python
"""Main entry point for the Realm PKM HTTP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

import uvicorn

from realm_pkm.api.app import create_app
from realm_pkm.config import config
from realm_pkm.models.db_models import init_db
from realm_pkm.observability import configure_logging, metrics


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Realm PKM Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("REALM_DATABASE_PATH")
    )
    parser.add_argument(
        "--host",
        help="Interface to bind",
        type=str,
        default=None
    )
    parser.add_argument(
        "--port",
        help="Port to listen on",
        type=int,
        default=None
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=None
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_dir:
        config.log_dir = Path(args.log_dir)
    config.log_level = args.log_level


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main(argv=None):
    """Run the Realm PKM server."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.get_log_dir(), level=log_level, console=True)
    except OSError as e:
        # Fall back to console logging when the log directory is not writable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        app = create_app(engine=engine)
        logger.info(f"Starting Realm PKM server on {config.host}:{config.port}")
        uvicorn.run(app, host=config.host, port=config.port, log_level=args.log_level.lower())
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
