"""
Web UI Module - FastAPI-based webhook transport
===============================================

This module exposes a bot over HTTP:
- Webhook endpoint feeding inbound messages into the dispatcher
- Verification hook for messaging platforms
- Rule listing
"""

from .app import create_app, run_app
from .routes import InboundMessage, create_router

__all__ = [
    "create_app",
    "run_app",
    "InboundMessage",
    "create_router",
]
