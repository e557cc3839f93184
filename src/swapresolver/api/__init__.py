"""Read-only status API."""

from swapresolver.api.app import create_app

__all__ = ["create_app"]
