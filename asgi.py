"""
asgi.py -- ASGI entry point for wikiauth.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
