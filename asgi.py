"""
asgi.py -- ASGI entry point for SessionGate.

Run with:  uvicorn asgi:app --reload

The clients in client/ are libraries embedded in the dashboard and the mobile
app; they talk to this app over HTTP only and are not mounted here.
"""

from api.main import app

__all__ = ["app"]
