"""
Entry point for running the canvas engine as a module.

Usage:
    python -m canvas_engine
"""

import sys

from canvas_engine.main import main

if __name__ == "__main__":
    sys.exit(main())
