"""HTTP API for snaptriage."""

from snaptriage.api.main import create_app

__all__ = ["create_app"]
