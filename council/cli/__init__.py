"""Command-line interface for council coordinators and signing agents."""

from .main import app, main

__all__ = ["app", "main"]
