"""HTTP API for the APM fusion engine."""

from .app import create_app

__all__ = ["create_app"]
