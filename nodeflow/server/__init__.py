"""HTTP service exposing server-side node execution."""

from nodeflow.server.app import create_app

__all__ = ["create_app"]
