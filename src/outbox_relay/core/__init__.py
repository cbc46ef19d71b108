"""
Outbox Relay Core Package

Database access, the outbox and inbox, messaging and job scheduling.
"""

from . import database
from . import outbox

__all__ = ["database", "outbox"]
