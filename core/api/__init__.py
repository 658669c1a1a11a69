"""HTTP surface for the prediction engine."""

from .app import create_app, main

__all__ = ["create_app", "main"]
