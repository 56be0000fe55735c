"""Command-line interface for the Keel runtime.

Key Components:
    - cli: Main CLI application (click-based)
"""

from keel.interfaces.cli.app import cli, main

__all__ = ["cli", "main"]
