"""
CLI entrypoint for the connlog listener.

Usage::

    connlog /etc/connlog/config.json [--log-level DEBUG] [--log-file] [--quiet]

SIGINT (and SIGTERM where available) request a clean shutdown; the listener
finishes within one poll timeout window.
"""

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from connlog.cancellation import CancellationToken
from connlog.config import CONFIG, load_config_file
from connlog.errors import ConfigParseError
from connlog.logging_utils import configure_file_logger, get_logger
from connlog.server import start_server

logger = get_logger("connlog")


def install_interrupt_handler(cancellation_token: CancellationToken) -> None:
    """Route SIGINT/SIGTERM to ``cancellation_token.cancel()``."""

    def handler(signum, frame):
        if not cancellation_token.cancelled:
            logger.info("Received exit signal", extra={"signal": signum})
        cancellation_token.cancel()

    signal.signal(signal.SIGINT, handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="connlog",
        description="Log every TCP/UDP message received on the configured endpoints",
    )
    parser.add_argument("config_path",
                        help="Absolute path to the JSON socket configuration file")
    parser.add_argument("--log-level", default=CONFIG["LOG_LEVEL"],
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        type=str.upper,
                        help=f"Logger level (default: {CONFIG['LOG_LEVEL']})")
    parser.add_argument("--log-file", action="store_true",
                        help=f"Also write logs to a timestamped file under {CONFIG['LOG_DIR']}/")
    parser.add_argument("--quiet", action="store_true",
                        help="Only log warnings and errors")
    return parser


def run(config_path: str, cancellation_token: CancellationToken) -> int:
    """Load the config file and run the server. Returns the process exit code."""
    try:
        app_config = load_config_file(config_path)
    except ConfigParseError as exc:
        logger.error("Failed to load config file", extra={"path": config_path, "error": str(exc),
                                                          "error_type": type(exc).__name__})
        return 1

    logger.info("Using configuration file", extra={"path": config_path,
                                                   "sockets": len(app_config.socket_configurations)})
    start_server(app_config.socket_configurations, cancellation_token)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entrypoint."""
    args = build_parser().parse_args(argv)

    logger.setLevel(logging.WARNING if args.quiet else getattr(logging, args.log_level))
    if args.log_file:
        log_path = configure_file_logger("connlog", logger, CONFIG["LOG_DIR"])
        logger.info("Log file", extra={"path": str(log_path)})

    cancellation_token = CancellationToken()
    install_interrupt_handler(cancellation_token)
    return run(args.config_path, cancellation_token)


if __name__ == "__main__":
    sys.exit(main())
