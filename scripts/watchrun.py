#!/usr/bin/env python3
"""
WatchRun Launcher Script.

Runs the watchrun CLI from a source checkout without installing it.
Requires Python 3.11+.

Usage:
    python scripts/watchrun.py --path src -- cargo check -- cargo doc
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from cli.main import main


if __name__ == "__main__":
    sys.exit(main())
