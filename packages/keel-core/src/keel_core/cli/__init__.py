"""Command-line interface for keel."""

from __future__ import annotations

from keel_core.cli.main import cli, main

__all__ = ["cli", "main"]
