"""
SETTLEMENT RAIL - API Module

FastAPI server exposing:
- Usage reporting (reporter)
- Lockup-bounded settlement (anyone)
- Rail termination, rates and roles (restricted)
- Fact journal queries for reconciliation
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
