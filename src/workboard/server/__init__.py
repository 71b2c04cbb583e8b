"""HTTP and WebSocket surface for workboard."""

from .api import create_app

__all__ = ["create_app"]
