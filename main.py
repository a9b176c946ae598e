"""
Main application entry point
Initializes the capture relay and starts the web server
"""

import asyncio
import argparse
import sys

import structlog
import uvicorn

from capture_relay.api.app import create_app
from capture_relay.cli.rule_manager import (
    clear_data_command,
    list_rules_command,
    store_status_command
)
from capture_relay.core.config import ApplicationConfig
from capture_relay.core.logging import configure_logging

# Configure logging first
config = ApplicationConfig()
configure_logging(
    log_level=config.logging.log_level,
    log_dir=str(config.logging.log_dir),
    json_logs=config.logging.json_logs
)
logger = structlog.get_logger()

app = create_app(config)


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Capture Relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          Start the web server
  python main.py --port 3001 --no-reload  Start on another port without reload
  python main.py --list-rules             Show capture, response and intercept rules
  python main.py --store-status           Show the JSON store files
  python main.py --clear-data             Delete all captured traffic
        """
    )

    parser.add_argument(
        "--list-rules",
        action="store_true",
        help="List all rules"
    )

    parser.add_argument(
        "--store-status",
        action="store_true",
        help="Show the backing file of every collection"
    )

    parser.add_argument(
        "--clear-data",
        action="store_true",
        help="Delete all captured traffic (asks for confirmation)"
    )

    # Server Options
    parser.add_argument(
        "--host",
        default=config.server.host,
        help=f"Host to bind the web server (default: {config.server.host})"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=config.server.port,
        help=f"Port to bind the web server (default: {config.server.port})"
    )

    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable hot reload (useful for production)"
    )

    return parser.parse_args()


async def run_cli_command(args):
    """Execute CLI commands"""
    if args.list_rules:
        return await list_rules_command()
    elif args.store_status:
        return store_status_command()
    elif args.clear_data:
        return await clear_data_command()

    return None


if __name__ == "__main__":
    # Parse command line arguments
    args = parse_arguments()

    # Check if this is a CLI command
    if any([args.list_rules, args.store_status, args.clear_data]):
        exit_code = asyncio.run(run_cli_command(args))
        sys.exit(exit_code or 0)

    # Otherwise, run the web server
    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        log_config=None  # Use our custom logging configuration
    )
