#!/usr/bin/env python
"""Main entry point for the Docspace MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from docspace.config import config
from docspace.exceptions import DocspaceError
from docspace.observability import configure_logging, metrics
from docspace.server.mcp_server import DocspaceMcpServer
from docspace.services.workspace_service import WorkspaceService


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Docspace MCP Server")
    parser.add_argument(
        "--workspace",
        help="Workspace directory (git repository root)",
        type=str,
        default=os.environ.get("DOCSPACE_WORKSPACE")
    )
    parser.add_argument(
        "--no-git",
        help="Disable version control for this run",
        action="store_true",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("DOCSPACE_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.workspace:
        config.workspace_path = Path(args.workspace).expanduser()
    if args.no_git:
        config.git_enabled = False


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    if metrics.save_metrics():
        logging.getLogger(__name__).info("Metrics saved to disk on shutdown")


def main(argv=None):
    """Run the Docspace MCP server."""
    args = parse_args(argv)
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

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Opening workspace {config.workspace_path}")
        server = DocspaceMcpServer(WorkspaceService(config.workspace_path))
    except DocspaceError as e:
        logger.error(f"Failed to open workspace: {e}")
        sys.exit(1)

    try:
        logger.info("Starting Docspace MCP server")
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
