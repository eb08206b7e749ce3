"""
asgi.py -- ASGI entry point for Enisi.

The payroll CRUD routers mount onto this app alongside the auth API; they
gate with auth.dependencies and record through app.state.audit.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
