"""
Entry point for running devspin via `python -m devspin`.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
