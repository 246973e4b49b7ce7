"""HTTP API for careslot."""

from careslot.api.app import create_app

__all__ = ["create_app"]
