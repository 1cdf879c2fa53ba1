"""
HTTP and websocket surface for the request catcher.

This package provides a single FastAPI application that exposes:
- Capture endpoints that record any inbound request
- A websocket for live viewing with catch-up on join
- Endpoint management and notification preference routes
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
