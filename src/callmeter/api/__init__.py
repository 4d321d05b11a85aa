"""
CALL METER - API Module

FastAPI server providing:
- Health signal for the billing worker
- Call setup / hangup hooks for the signaling collaborator
- Wallet top-ups
- Ledger and reconciliation views
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
