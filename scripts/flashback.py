#!/usr/bin/env python3
"""
Binlog Flashback Tool for MySQL

Generates rollback SQL from the binlog and finds binlog positions for a time
window. See src/flashback/cli.py for the full option reference.

Usage:
    ./scripts/flashback.py -H db1 -u admin -p secret rollback -f mysql-bin.000042 -s 1337
    ./scripts/flashback.py -H db1 -u admin -p secret rollback -f mysql-bin.000042 --stop-position 98765
    ./scripts/flashback.py -H db1 -u admin -p secret locate --start-time "2024-05-01 10:00:00"
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.flashback.cli import main


if __name__ == "__main__":
    sys.exit(main())
