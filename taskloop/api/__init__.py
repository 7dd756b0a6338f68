"""
API MODULE
==========

FastAPI admin API for taskloop.

Usage:
    uvicorn taskloop.api:app

Or:
    taskloop serve
"""

from .app import app, create_app

__all__ = ['app', 'create_app']
