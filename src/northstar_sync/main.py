#!/usr/bin/env python
"""Main entry point for the Northstar sync MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from northstar_sync.config import config
from northstar_sync.models.db_models import init_db
from northstar_sync.observability import configure_logging, metrics
from northstar_sync.server.mcp_server import NorthstarMcpServer


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Northstar Sync MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NORTHSTAR_DATABASE_PATH")
    )
    parser.add_argument(
        "--remote-url",
        help="Base URL of the remote backend",
        type=str,
        default=os.environ.get("NORTHSTAR_REMOTE_URL")
    )
    parser.add_argument(
        "--no-sync",
        help="Run offline: never start the background sync worker",
        action="store_true",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NORTHSTAR_LOG_LEVEL", "INFO")
    )
    return parser.parse_args()


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.remote_url:
        config.remote_url = args.remote_url
    if args.no_sync:
        config.sync_enabled = False


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main():
    """Run the Northstar sync MCP server."""
    # Parse arguments and update config
    args = parse_args()
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    # Register metrics save on shutdown
    atexit.register(_save_metrics_on_exit)

    # Initialize database schema; a single engine is shared by the whole store
    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info("Starting Northstar MCP server")
        server = NorthstarMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
