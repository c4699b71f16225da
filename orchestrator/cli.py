"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the DCA bot.

- Provides argparse-based CLI
- Loads configuration from environment (.env supported)
- Configures logging once for the whole process

============================================================
USAGE
============================================================
python app.py
python app.py --single-cycle --exchange mock
python -m orchestrator.cli --log-level DEBUG --log-format text

============================================================
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from dca_engine.config import BotConfig
from dca_engine.types import ConfigurationError

from .driver import run_bot, EXIT_FATAL


# ============================================================
# LOGGING SETUP
# ============================================================

TEXT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name
        log_format: "json" or "text"
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Keep SQL and HTTP internals out of INFO output
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="dca-bot",
        description="Staggered DCA spot trading bot",
    )

    execution_group = parser.add_argument_group("Execution Options")
    execution_group.add_argument(
        "--single-cycle",
        action="store_true",
        help="Run a single cycle and exit (no loop)",
    )
    execution_group.add_argument(
        "--exchange",
        type=str,
        choices=["binance", "mock"],
        default=None,
        help="Override the EXCHANGE environment variable",
    )

    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Logging format (default: text)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    return parser


def load_config(args: argparse.Namespace) -> BotConfig:
    """
    Build configuration from environment and CLI overrides.

    Raises:
        ConfigurationError: On missing or invalid settings
    """
    load_dotenv()
    environ = dict(os.environ)
    if args.exchange:
        environ["EXCHANGE"] = args.exchange
    return BotConfig.from_env(environ)


# ============================================================
# MAIN ENTRY POINT
# ============================================================

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

    setup_logging(args.log_level or "INFO", args.log_format)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        logging.critical(f"Configuration error: {e}")
        return EXIT_FATAL

    if args.log_level is None:
        setup_logging(config.driver.log_level, args.log_format)

    logging.info(
        f"Bot configured: symbol={config.strategy.symbol} exchange={config.exchange.exchange_id} "
        f"testnet={config.exchange.testnet} capital={config.strategy.initial_capital} "
        f"order_amount={config.strategy.order_amount}"
    )

    try:
        return asyncio.run(run_bot(config, single_cycle=args.single_cycle))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
