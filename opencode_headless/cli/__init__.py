"""Command-line interface for opencode-headless."""

from .main import app

__all__ = ["app"]
