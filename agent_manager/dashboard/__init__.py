"""FastAPI control surface for the Agent Manager."""

from .main import create_app

__all__ = ["create_app"]
