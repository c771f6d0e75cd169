"""
SolBill Collector - API Module

FastAPI server exposing:
- Subscription gate decisions
- Pay-per-use challenge for gated routes
- Collector health and metrics
"""

from .server import AppState, app, create_app

__all__ = ["AppState", "app", "create_app"]
