"""CLI commands for pairlobby.

This package provides the command-line interface: lobby records,
trading, valuation sync and the reconciliation queue.
"""

from pairlobby.cli.main import cli, main

__all__ = ["cli", "main"]
