"""
Core package exposing the Media Vault FastAPI application.
Importing this package initializes logging, middleware and routes.
"""

from . import app_state  # noqa: F401
