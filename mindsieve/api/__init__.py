"""API module for MindSieve.

This module provides the FastAPI application and endpoints.
"""

from mindsieve.api.main import app, create_app

__all__ = ["app", "create_app"]
