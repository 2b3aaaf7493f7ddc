"""FastAPI application exposing the project sync endpoints."""

from .app import create_app
from .settings import SyncApiSettings

__all__ = ["create_app", "SyncApiSettings"]
