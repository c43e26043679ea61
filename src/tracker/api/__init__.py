"""HTTP API over the rate service."""

from tracker.api.app import create_app

__all__ = ["create_app"]
