"""HTTP API for starting, polling and controlling executions."""

from .main import create_app

__all__ = ["create_app"]
