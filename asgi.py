"""
asgi.py -- ASGI entry point for Presensi.

Run with:  uvicorn asgi:app --reload

The page front end is served separately; this process only exposes the JSON
API and the request guard that answers page paths with redirects.
"""

from api.main import app

__all__ = ["app"]
