"""
asgi.py -- Application assembly for Gatehouse.

The ASGI entry point servers import. api/main.py owns the app; this module
only re-exports it so the server command does not depend on package layout.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
