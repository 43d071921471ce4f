"""Entry point for running qrscan_engine as a module.

Usage:
    python -m qrscan_engine <command> [options]
"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
