#!/usr/bin/env python3
"""
DCA Bot - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
- Loads configuration from the environment (.env supported)
- Runs trading cycles until SIGINT/SIGTERM
- Exits non-zero when BotState cannot be persisted, so a
  supervisor can restart and reconcile from the store

============================================================
USAGE
============================================================
Direct execution:
    python app.py

One cycle against the in-memory exchange:
    python app.py --single-cycle --exchange mock

With PM2:
    pm2 start app.py --interpreter python --name dca-bot

============================================================
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
