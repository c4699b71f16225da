"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
Process-level runtime for the DCA bot: the cycle driver,
CLI and logging setup.

============================================================
"""

from .driver import CycleDriver, run_bot, EXIT_OK, EXIT_FATAL
from .cli import main, create_parser, setup_logging


__all__ = [
    "CycleDriver",
    "run_bot",
    "EXIT_OK",
    "EXIT_FATAL",
    "main",
    "create_parser",
    "setup_logging",
]
