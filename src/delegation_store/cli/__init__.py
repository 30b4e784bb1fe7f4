"""Command line interface for the delegation store."""

from .main import cli

__all__ = ["cli"]
