"""Execution providers for pairlobby."""

from pairlobby.execution.base import ExecutionProvider, poll_until
from pairlobby.execution.paper import PaperExecutionProvider
from pairlobby.execution.venue import VenueExecutionProvider

__all__ = [
    "ExecutionProvider",
    "PaperExecutionProvider",
    "VenueExecutionProvider",
    "poll_until",
]
