"""Control API for the session supervisor."""

from .server import create_app

__all__ = ["create_app"]
