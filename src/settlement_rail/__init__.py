"""
SETTLEMENT RAIL
Usage accounting and payment settlement ledger

Usage rollups are reported per entity and epoch, converted to billable
amounts, accumulated, and settled against an external payment collaborator
that enforces a lockup limit per rail.
"""

from .operator import LedgerOperator
from .config import RailConfig

__version__ = "1.0.0"

__all__ = [
    "LedgerOperator",
    "RailConfig",
    "__version__",
]
