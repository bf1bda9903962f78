"""API Package.

FastAPI operator API for the billing sync engine.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
