#!/usr/bin/env python
"""
Launcher script for the Lot Tracker command line.

This script ensures the src/ directory is on the Python path before
launching the CLI, so it works from a checkout without installing.
"""

import sys
from pathlib import Path

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))

# Now import and run the CLI
from lot_tracker.main import main

if __name__ == "__main__":
    sys.exit(main())
